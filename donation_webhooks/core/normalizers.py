"""
Webhook normalizers: provider payloads to canonical PaymentEvent.

Each provider has one normalizer implementing WebhookNormalizer. Adding a
provider means adding a normalizer here and a verification policy in
core.signatures; the transition engine never sees provider shapes.

Contract:
- Unrecognized statuses/event types become PaymentStatus.UNKNOWN (no error)
- Recognized events missing their identifying fields raise ValidationError
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog

from donation_webhooks.core.events import PaymentEvent, PaymentProvider, PaymentStatus
from donation_webhooks.core.exceptions import ValidationError

logger = structlog.get_logger(__name__)


def _as_str(value: Any) -> Optional[str]:
    """Coerce an identifier-like payload value to a non-empty string."""
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    # Infinity, NaN and overflowing exponents carry no usable amount
    return amount if amount.is_finite() else None


@dataclass(frozen=True)
class InvoiceReference:
    """What a CloudPayments InvoiceId points at."""

    donation_id: Optional[str] = None
    subscription_id: Optional[str] = None


def decode_invoice_id(raw: Any) -> InvoiceReference:
    """
    Decode a CloudPayments InvoiceId.

    The field is either a JSON object (``{"donationId": ..., "subscription":
    true, "subscriptionId": ...}``), possibly JSON-encoded into a string, or
    a bare donation id. Structured decoding is tried first.
    """
    if isinstance(raw, dict):
        decoded: Any = raw
        text = None
    else:
        text = _as_str(raw)
        if text is None:
            return InvoiceReference()
        try:
            decoded = json.loads(text)
        except ValueError:
            return InvoiceReference(donation_id=text)

    if not isinstance(decoded, dict):
        return InvoiceReference(donation_id=text)

    subscription_id = None
    if decoded.get("subscription"):
        subscription_id = _as_str(decoded.get("subscriptionId"))
    return InvoiceReference(
        donation_id=_as_str(decoded.get("donationId")),
        subscription_id=subscription_id,
    )


class WebhookNormalizer(ABC):
    """Interface every provider normalizer implements."""

    provider: PaymentProvider

    @abstractmethod
    def normalize(self, payload: Any) -> PaymentEvent:
        """
        Map a parsed JSON payload to a PaymentEvent.

        Raises:
            ValidationError: If a recognized event lacks identifying fields
        """

    def _require_object(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError(
                f"{self.provider.value} payload must be a JSON object",
                provider=self.provider.value,
            )
        return payload


class CloudPaymentsNormalizer(WebhookNormalizer):
    """
    CloudPayments notifications.

    Fields sit under ``Model`` when wrapped, or at the top level for flat
    notifications. The donation is referenced through ``InvoiceId``.
    """

    provider = PaymentProvider.CLOUDPAYMENTS

    STATUS_MAP: Dict[str, PaymentStatus] = {
        "Completed": PaymentStatus.SUCCEEDED,
        "Authorized": PaymentStatus.SUCCEEDED,
        "Declined": PaymentStatus.DECLINED,
        "Cancelled": PaymentStatus.DECLINED,
    }

    def normalize(self, payload: Any) -> PaymentEvent:
        body = self._require_object(payload)
        model = body.get("Model", body)
        if not isinstance(model, dict):
            raise ValidationError(
                "CloudPayments Model must be a JSON object", provider="cloudpayments"
            )

        raw_status = _as_str(model.get("Status")) or ""
        status = self.STATUS_MAP.get(raw_status, PaymentStatus.UNKNOWN)
        invoice = decode_invoice_id(model.get("InvoiceId"))

        event = PaymentEvent(
            provider=self.provider,
            event_type=raw_status or "unknown",
            status=status,
            transaction_id=_as_str(model.get("TransactionId")),
            correlation_key=invoice.donation_id,
            amount=_as_decimal(model.get("Amount")),
            currency=_as_str(model.get("Currency")),
            recurring_id=_as_str(model.get("RecurringId")),
            subscription_id=invoice.subscription_id,
            failure_reason=_as_str(model.get("Reason")),
        )

        if status is PaymentStatus.UNKNOWN:
            logger.info("cloudpayments_unhandled_status", status=raw_status or None)
            return event

        if event.transaction_id is None:
            raise ValidationError(
                "CloudPayments notification missing TransactionId",
                user_message="Missing transaction id",
                provider="cloudpayments",
            )
        if event.correlation_key is None and not event.touches_subscription:
            raise ValidationError(
                "CloudPayments notification missing InvoiceId",
                user_message="Missing invoice id",
                provider="cloudpayments",
                transaction_id=event.transaction_id,
            )
        return event


class YooKassaNormalizer(WebhookNormalizer):
    """
    YooKassa notifications: ``{"event": ..., "object": {...}}``.

    The donation id travels in ``object.metadata`` as ``donationId`` or
    ``donation_id``.
    """

    provider = PaymentProvider.YOOKASSA

    EVENT_MAP: Dict[str, PaymentStatus] = {
        "payment.succeeded": PaymentStatus.SUCCEEDED,
        "payment.canceled": PaymentStatus.DECLINED,
        "refund.succeeded": PaymentStatus.REFUNDED,
    }

    def normalize(self, payload: Any) -> PaymentEvent:
        body = self._require_object(payload)
        event_type = _as_str(body.get("event"))
        obj = body.get("object")
        if event_type is None or not isinstance(obj, dict):
            raise ValidationError(
                "YooKassa notification missing event or object",
                provider="yookassa",
            )

        metadata = obj.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        amount = obj.get("amount")
        if not isinstance(amount, dict):
            amount = {}
        cancellation = obj.get("cancellation_details")
        if not isinstance(cancellation, dict):
            cancellation = {}

        status = self.EVENT_MAP.get(event_type, PaymentStatus.UNKNOWN)
        donation_id = _as_str(metadata.get("donationId")) or _as_str(metadata.get("donation_id"))
        transaction_id = _as_str(obj.get("id"))
        if status is PaymentStatus.REFUNDED:
            # refunds carry their own id; the donation was paid under payment_id
            transaction_id = _as_str(obj.get("payment_id")) or transaction_id
        event = PaymentEvent(
            provider=self.provider,
            event_type=event_type,
            status=status,
            transaction_id=transaction_id,
            correlation_key=donation_id,
            amount=_as_decimal(amount.get("value")),
            currency=_as_str(amount.get("currency")),
            failure_reason=_as_str(cancellation.get("reason")),
        )

        if status is PaymentStatus.UNKNOWN:
            logger.info("yookassa_unhandled_event", event_type=event_type)
            return event

        if event.transaction_id is None:
            raise ValidationError(
                "YooKassa notification missing object.id",
                user_message="Missing transaction id",
                provider="yookassa",
            )
        if event.correlation_key is None:
            raise ValidationError(
                "YooKassa notification missing donationId in metadata",
                user_message="Missing donationId",
                provider="yookassa",
                transaction_id=event.transaction_id,
            )
        return event


_NORMALIZERS: Dict[PaymentProvider, WebhookNormalizer] = {
    PaymentProvider.CLOUDPAYMENTS: CloudPaymentsNormalizer(),
    PaymentProvider.YOOKASSA: YooKassaNormalizer(),
}


def get_normalizer(provider: PaymentProvider) -> WebhookNormalizer:
    """Look up the normalizer registered for ``provider``."""
    return _NORMALIZERS[provider]


def normalize(provider: PaymentProvider, payload: Any) -> PaymentEvent:
    """Normalize ``payload`` with the provider's registered normalizer."""
    return get_normalizer(provider).normalize(payload)
