"""Payment webhook reconciliation for donations and recurring subscriptions."""

__version__ = "1.0.0"
