"""
Webhook processing pipeline.

verify -> parse -> normalize -> transition -> billing.

Everything up to and including normalization may reject the callback with a
4xx/5xx so that the provider retries or surfaces the problem. Once a callback
is authenticated and parsed it is always acknowledged; internal failures from
that point on are logged and counted, never returned.
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from donation_webhooks.core.billing import BillingAdvancer
from donation_webhooks.core.events import PaymentEvent, PaymentProvider
from donation_webhooks.core.exceptions import ValidationError, WebhookError
from donation_webhooks.core.normalizers import normalize
from donation_webhooks.core.signatures import SignatureVerifier
from donation_webhooks.core.transitions import TransitionEngine, TransitionOutcome
from donation_webhooks.monitoring.logging import bind_webhook_context
from donation_webhooks.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OUTCOME_ERROR = "error"
OUTCOME_REJECTED = "rejected"


@dataclass(frozen=True)
class WebhookResult:
    """Acknowledgement returned to the provider."""

    status: str
    event_id: Optional[str]


def parse_body(body: bytes) -> Any:
    """Decode a raw JSON request body."""
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Malformed JSON body: {e}", user_message="Invalid JSON") from e


class WebhookProcessor:
    """Runs a provider callback through the reconciliation pipeline."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        transitions: TransitionEngine,
        billing: BillingAdvancer,
    ):
        self.verifier = verifier
        self.transitions = transitions
        self.billing = billing

    async def handle(
        self, provider: PaymentProvider, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResult:
        """
        Process one webhook delivery.

        Args:
            provider: Provider the callback route belongs to
            body: Raw request body, exactly as received
            headers: Request headers

        Returns:
            WebhookResult: Outcome and provider transaction id

        Raises:
            ConfigurationError: Mandatory secret missing (500)
            AuthenticationError: Signature missing or wrong (401)
            ValidationError: Malformed body or missing identifiers (400)
        """
        started = time.perf_counter()

        try:
            self.verifier.authenticate(provider, body, headers)
            event = normalize(provider, parse_body(body))
        except WebhookError as e:
            logger.warning(
                "webhook_rejected",
                provider=provider.value,
                error_code=e.error_code,
                error=e.message,
            )
            metrics.record_webhook_event(
                provider.value, OUTCOME_REJECTED, time.perf_counter() - started
            )
            raise

        bind_webhook_context(provider.value, event.transaction_id)
        logger.info("webhook_received", event_type=event.event_type, status=event.status.value)

        try:
            outcome = await self._process(event)
        except Exception as e:
            logger.error(
                "webhook_processing_failed",
                donation_id=event.correlation_key,
                error=str(e),
                exc_info=True,
            )
            outcome = OUTCOME_ERROR

        metrics.record_webhook_event(provider.value, outcome, time.perf_counter() - started)
        logger.info("webhook_acknowledged", outcome=outcome)
        return WebhookResult(status=outcome, event_id=event.transaction_id)

    async def _process(self, event: PaymentEvent) -> str:
        if not event.is_actionable:
            return TransitionOutcome.IGNORED.value

        outcome: Optional[str] = None
        if event.correlation_key is not None:
            outcome = (await self.transitions.apply(event)).value

        if event.touches_subscription:
            billing_outcome = (await self.billing.apply(event)).value
            outcome = outcome or billing_outcome

        return outcome or TransitionOutcome.IGNORED.value
