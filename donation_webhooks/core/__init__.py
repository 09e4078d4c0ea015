"""Reconciliation core: verification, normalization, transitions, fan-out and billing."""
