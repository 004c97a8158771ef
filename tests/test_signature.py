"""Unit tests for delivery signature helpers."""

import hashlib
import hmac

from pushdeploy.utils.signature import SIGNATURE_PREFIX, sign_event, verify_signature

SECRET = "s3cret"
SHA = "a" * 40


class TestSignEvent:
    """Tests for sign_event."""

    def test_matches_hmac_of_joined_fields(self):
        """Signature is HMAC-SHA256 over event, ref and commit joined by newlines."""
        expected = hmac.new(
            SECRET.encode(), f"push\nrefs/heads/main\n{SHA}".encode(), hashlib.sha256
        ).hexdigest()
        assert sign_event(SECRET, "push", "refs/heads/main", SHA) == expected

    def test_depends_on_every_field(self):
        base = sign_event(SECRET, "push", "refs/heads/main", SHA)
        assert sign_event(SECRET, "tag", "refs/heads/main", SHA) != base
        assert sign_event(SECRET, "push", "refs/heads/dev", SHA) != base
        assert sign_event(SECRET, "push", "refs/heads/main", "b" * 40) != base
        assert sign_event("other", "push", "refs/heads/main", SHA) != base


class TestVerifySignature:
    """Tests for verify_signature."""

    def test_valid_signature(self):
        signature = sign_event(SECRET, "push", "main", SHA)
        assert verify_signature(SECRET, signature, "push", "main", SHA)

    def test_prefixed_and_uppercase_signature(self):
        """A ``sha256=`` prefix and upper-case hex are accepted."""
        signature = sign_event(SECRET, "push", "main", SHA)
        assert verify_signature(SECRET, SIGNATURE_PREFIX + signature.upper(), "push", "main", SHA)

    def test_wrong_secret_fails(self):
        signature = sign_event("other-secret", "push", "main", SHA)
        assert not verify_signature(SECRET, signature, "push", "main", SHA)

    def test_tampered_ref_fails(self):
        signature = sign_event(SECRET, "push", "main", SHA)
        assert not verify_signature(SECRET, signature, "push", "production", SHA)

    def test_non_string_values_fail(self):
        """Unvalidated payload values of the wrong type never verify."""
        signature = sign_event(SECRET, "push", "main", SHA)
        assert not verify_signature(SECRET, None, "push", "main", SHA)
        assert not verify_signature(SECRET, signature, None, "main", SHA)
        assert not verify_signature(SECRET, signature, "push", ["main"], SHA)
        assert not verify_signature(SECRET, signature, "push", "main", 123)

    def test_empty_secret_rejects_everything(self):
        signature = sign_event("", "push", "main", SHA)
        assert not verify_signature("", signature, "push", "main", SHA)
