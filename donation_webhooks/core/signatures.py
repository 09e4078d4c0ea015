"""
Webhook signature verification: constant-time HMAC per provider.

Both providers sign the raw request body with HMAC-SHA256 and send the
base64-encoded digest in a header. They differ in policy:

- CloudPayments: optional. Without a configured secret the callback is
  accepted unauthenticated (soft-disabled) and a warning is logged on every
  request. Set CLOUDPAYMENTS_API_SECRET in every deployed environment.
- YooKassa: mandatory. Without a configured secret the callback is rejected
  with ConfigurationError, never processed.

Comparison always goes through hmac.compare_digest() on bytes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

import structlog

from donation_webhooks.config import Settings, get_settings
from donation_webhooks.core.events import PaymentProvider
from donation_webhooks.core.exceptions import AuthenticationError, ConfigurationError
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class VerificationResult(str, Enum):
    """Outcome of checking a callback signature."""

    AUTHENTIC = "authentic"
    INAUTHENTIC = "inauthentic"
    UNCONFIGURED = "unconfigured"


@dataclass(frozen=True)
class VerificationPolicy:
    """How a provider signs its callbacks."""

    header_names: Tuple[str, ...]
    required: bool


POLICIES: Dict[PaymentProvider, VerificationPolicy] = {
    PaymentProvider.CLOUDPAYMENTS: VerificationPolicy(
        header_names=("x-content-hmac", "content-hmac"),
        required=False,
    ),
    PaymentProvider.YOOKASSA: VerificationPolicy(
        header_names=("x-yookassa-signature",),
        required=True,
    ),
}


def compute_signature(secret: str, body: bytes) -> str:
    """Base64-encoded HMAC-SHA256 of ``body`` keyed with ``secret``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    body: bytes, signature_header: Optional[str], secret: Optional[str]
) -> VerificationResult:
    """
    Check ``signature_header`` against the body.

    Args:
        body: Raw request body bytes
        signature_header: Value of the provider's signature header
        secret: Shared secret, or None if not configured

    Returns:
        VerificationResult
    """
    if not secret:
        return VerificationResult.UNCONFIGURED
    if not signature_header:
        return VerificationResult.INAUTHENTIC

    expected = compute_signature(secret, body).encode("ascii")
    provided = signature_header.strip().encode("utf-8")
    if hmac.compare_digest(expected, provided):
        return VerificationResult.AUTHENTIC
    return VerificationResult.INAUTHENTIC


class SignatureVerifier:
    """Applies each provider's verification policy to inbound callbacks."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def secret_for(self, provider: PaymentProvider) -> Optional[str]:
        if provider is PaymentProvider.CLOUDPAYMENTS:
            return self.settings.cloudpayments_api_secret
        if provider is PaymentProvider.YOOKASSA:
            return self.settings.yookassa_secret_key
        return None

    @staticmethod
    def extract_signature(
        provider: PaymentProvider, headers: Mapping[str, str]
    ) -> Optional[str]:
        """Pull the signature header out of (case-insensitive) request headers."""
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in POLICIES[provider].header_names:
            value = lowered.get(name)
            if value:
                return value
        return None

    def verify(
        self, provider: PaymentProvider, body: bytes, signature: Optional[str]
    ) -> VerificationResult:
        return verify_signature(body, signature, self.secret_for(provider))

    def authenticate(
        self, provider: PaymentProvider, body: bytes, headers: Mapping[str, str]
    ) -> VerificationResult:
        """
        Enforce the provider's policy.

        Returns:
            VerificationResult: AUTHENTIC, or UNCONFIGURED for soft-disabled providers

        Raises:
            ConfigurationError: Mandatory secret is not configured
            AuthenticationError: Signature missing or mismatched
        """
        policy = POLICIES[provider]
        result = self.verify(provider, body, self.extract_signature(provider, headers))
        metrics.record_signature_check(provider.value, result.value)

        if result is VerificationResult.UNCONFIGURED:
            if policy.required:
                logger.error("webhook_secret_not_configured", provider=provider.value)
                raise ConfigurationError(
                    f"{provider.value} webhook secret is not configured",
                    provider=provider.value,
                )
            logger.warning(
                "webhook_signature_verification_disabled",
                provider=provider.value,
                detail="no secret configured; callback accepted unauthenticated",
            )
            return result

        if result is VerificationResult.INAUTHENTIC:
            logger.warning("webhook_signature_invalid", provider=provider.value)
            raise AuthenticationError(
                f"{provider.value} webhook signature mismatch", provider=provider.value
            )

        return result
