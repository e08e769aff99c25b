"""
Webhook signature tests.

Verification must fail closed.
"""

import pytest

from core.driver import compute_signature, verify_signature
from core.errors import SignatureError


BODY = b'{"content": "reset my password", "tenant_id": "contoso"}'
SECRET = "whsec-test-secret"


@pytest.mark.unit
class TestVerifySignature:

    def test_valid_signature_accepted(self):
        verify_signature(BODY, compute_signature(BODY, SECRET), SECRET)

    def test_prefixed_signature_accepted(self):
        verify_signature(BODY, "sha256=" + compute_signature(BODY, SECRET), SECRET)

    def test_uppercase_hex_accepted(self):
        verify_signature(BODY, compute_signature(BODY, SECRET).upper(), SECRET)

    def test_any_signature_in_list_accepted(self):
        """During secret rotation the sender signs with both secrets."""
        header = ",".join(
            [
                "sha256=" + compute_signature(BODY, "old-secret"),
                "sha256=" + compute_signature(BODY, SECRET),
            ]
        )

        verify_signature(BODY, header, SECRET)

    def test_mismatch_rejected(self):
        with pytest.raises(SignatureError, match="does not match") as exc_info:
            verify_signature(BODY, compute_signature(BODY, "other-secret"), SECRET)

        assert exc_info.value.reason_code == "INVALID_SIGNATURE"

    def test_tampered_body_rejected(self):
        signature = compute_signature(BODY, SECRET)

        with pytest.raises(SignatureError):
            verify_signature(BODY + b" ", signature, SECRET)

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature_rejected(self, signature):
        with pytest.raises(SignatureError, match="Missing"):
            verify_signature(BODY, signature, SECRET)

    @pytest.mark.parametrize("secret", [None, "", "   "])
    def test_unconfigured_secret_rejects_everything(self, secret):
        """No secret means no webhook is ever accepted."""
        with pytest.raises(SignatureError, match="not configured"):
            verify_signature(BODY, compute_signature(BODY, "anything"), secret)

    def test_blank_candidates_ignored(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY, "sha256=, ,", SECRET)
