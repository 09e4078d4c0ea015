"""
Unit tests for webhook signature verification.
"""
import base64
import hashlib
import hmac

import pytest

from donation_webhooks.config import Settings
from donation_webhooks.core.events import PaymentProvider
from donation_webhooks.core.exceptions import AuthenticationError, ConfigurationError
from donation_webhooks.core.signatures import (
    SignatureVerifier,
    VerificationResult,
    compute_signature,
    verify_signature,
)

BODY = b'{"TransactionId":123,"Status":"Completed"}'


class TestVerifySignature:
    """HMAC-SHA256 / base64 comparison."""

    @pytest.mark.unit
    def test_compute_signature_is_base64_hmac_sha256(self) -> None:
        expected = base64.b64encode(
            hmac.new(b"secret", BODY, hashlib.sha256).digest()
        ).decode("ascii")
        assert compute_signature("secret", BODY) == expected

    @pytest.mark.unit
    def test_matching_signature_is_authentic(self) -> None:
        header = compute_signature("secret", BODY)
        assert verify_signature(BODY, header, "secret") is VerificationResult.AUTHENTIC

    @pytest.mark.unit
    def test_single_byte_change_is_inauthentic(self) -> None:
        header = compute_signature("secret", BODY)
        tampered = BODY.replace(b"123", b"124")
        assert verify_signature(tampered, header, "secret") is VerificationResult.INAUTHENTIC

    @pytest.mark.unit
    def test_wrong_secret_is_inauthentic(self) -> None:
        header = compute_signature("other", BODY)
        assert verify_signature(BODY, header, "secret") is VerificationResult.INAUTHENTIC

    @pytest.mark.unit
    def test_missing_header_with_secret_is_inauthentic(self) -> None:
        assert verify_signature(BODY, None, "secret") is VerificationResult.INAUTHENTIC
        assert verify_signature(BODY, "", "secret") is VerificationResult.INAUTHENTIC

    @pytest.mark.unit
    def test_no_secret_is_unconfigured(self) -> None:
        assert verify_signature(BODY, "anything", None) is VerificationResult.UNCONFIGURED


class TestSignatureVerifier:
    """Per-provider verification policy."""

    @pytest.mark.unit
    def test_cloudpayments_header_lookup_is_case_insensitive(self) -> None:
        headers = {"X-Content-HMAC": "abc"}
        assert SignatureVerifier.extract_signature(PaymentProvider.CLOUDPAYMENTS, headers) == "abc"

    @pytest.mark.unit
    def test_cloudpayments_falls_back_to_content_hmac(self) -> None:
        headers = {"Content-HMAC": "xyz"}
        assert SignatureVerifier.extract_signature(PaymentProvider.CLOUDPAYMENTS, headers) == "xyz"

    @pytest.mark.unit
    def test_cloudpayments_authentic(self, test_settings: Settings) -> None:
        verifier = SignatureVerifier(test_settings)
        headers = {"X-Content-HMAC": compute_signature("cp_test_secret", BODY)}
        result = verifier.authenticate(PaymentProvider.CLOUDPAYMENTS, BODY, headers)
        assert result is VerificationResult.AUTHENTIC

    @pytest.mark.unit
    def test_cloudpayments_without_secret_is_accepted_unauthenticated(self) -> None:
        verifier = SignatureVerifier(Settings(cloudpayments_api_secret=None))
        result = verifier.authenticate(PaymentProvider.CLOUDPAYMENTS, BODY, {})
        assert result is VerificationResult.UNCONFIGURED

    @pytest.mark.unit
    def test_blank_secret_counts_as_unset(self) -> None:
        settings = Settings(cloudpayments_api_secret="  ", yookassa_secret_key="")
        assert settings.cloudpayments_api_secret is None
        assert settings.yookassa_secret_key is None
        assert settings.cloudpayments_verification_enabled is False

    @pytest.mark.unit
    def test_cloudpayments_bad_signature_raises(self, test_settings: Settings) -> None:
        verifier = SignatureVerifier(test_settings)
        with pytest.raises(AuthenticationError) as exc_info:
            verifier.authenticate(
                PaymentProvider.CLOUDPAYMENTS, BODY, {"X-Content-HMAC": "bm9wZQ=="}
            )
        assert exc_info.value.http_status == 401
        assert exc_info.value.to_dict() == {"error": "Invalid signature"}

    @pytest.mark.unit
    def test_yookassa_without_secret_is_configuration_error(self) -> None:
        verifier = SignatureVerifier(Settings(yookassa_secret_key=None))
        headers = {"X-Yookassa-Signature": compute_signature("whatever", BODY)}
        with pytest.raises(ConfigurationError) as exc_info:
            verifier.authenticate(PaymentProvider.YOOKASSA, BODY, headers)
        assert exc_info.value.http_status == 500
        assert exc_info.value.error_code == "webhook_misconfigured"

    @pytest.mark.unit
    def test_yookassa_missing_header_raises(self, test_settings: Settings) -> None:
        verifier = SignatureVerifier(test_settings)
        with pytest.raises(AuthenticationError):
            verifier.authenticate(PaymentProvider.YOOKASSA, BODY, {})

    @pytest.mark.unit
    def test_yookassa_authentic(self, test_settings: Settings) -> None:
        verifier = SignatureVerifier(test_settings)
        headers = {"x-yookassa-signature": compute_signature("yk_test_secret", BODY)}
        result = verifier.authenticate(PaymentProvider.YOOKASSA, BODY, headers)
        assert result is VerificationResult.AUTHENTIC
