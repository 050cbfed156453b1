"""
Unit tests for onboarding callback authentication.
"""

import json
import time
from urllib.parse import parse_qs, urlparse

import pytest

from service_institutions.app.tokens.callback import (
    CALLBACK_TOKEN_QUERY_PARAM,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    TOKEN_HEADER,
    CallbackAuthenticator,
    compute_callback_hmac,
    normalize_hex_signature,
)
from shared.errors import ConfigurationError
from shared.test_helpers import TEST_CALLBACK_SECRET, TestDataFactory, sign_callback_body


@pytest.fixture
def authenticator():
    """Create CallbackAuthenticator instance."""
    return CallbackAuthenticator(callback_secret=TEST_CALLBACK_SECRET)


@pytest.fixture
def raw_body():
    return json.dumps(TestDataFactory.create_callback_body()).encode("utf-8")


class TestCallbackToken:
    """Test cases for callback bearer tokens."""

    def test_issue_and_verify(self, authenticator):
        """Test an issued token verifies and carries the correlation claims."""
        issued = authenticator.issue_token("user-1", "uni.example.edu", "sess-1")

        result = authenticator.verify_token(issued.token, {"stableUserId": "user-1"})

        assert result.ok is True
        assert result.payload["institutionId"] == "uni.example.edu"
        assert result.payload["sessionId"] == "sess-1"
        assert issued.ttl_seconds == 1200

    def test_missing_token(self, authenticator):
        assert authenticator.verify_token(None).code == "MISSING_TOKEN"

    def test_expired_token(self):
        """Test a token issued beyond its TTL fails."""
        past = time.time() - 3600
        issuing = CallbackAuthenticator(callback_secret=TEST_CALLBACK_SECRET, clock=lambda: past)
        issued = issuing.issue_token("user-1")

        result = CallbackAuthenticator(callback_secret=TEST_CALLBACK_SECRET).verify_token(issued.token)

        assert result.ok is False
        assert result.code == "TOKEN_EXPIRED"

    def test_foreign_secret_token(self, authenticator):
        other = CallbackAuthenticator(callback_secret="another-callback-secret-0123456789abcdef")
        issued = other.issue_token("user-1")

        result = authenticator.verify_token(issued.token)

        assert result.code == "TOKEN_INVALID"

    def test_correlation_mismatch(self, authenticator):
        """Test claims that contradict the callback body are rejected."""
        issued = authenticator.issue_token("user-1", "uni.example.edu", "sess-1")

        assert authenticator.verify_token(issued.token, {"stableUserId": "user-2"}).code == "STABLE_USER_MISMATCH"
        assert authenticator.verify_token(issued.token, {"institutionId": "other.edu"}).code == "INSTITUTION_MISMATCH"
        assert authenticator.verify_token(issued.token, {"sessionId": "sess-2"}).code == "SESSION_MISMATCH"

    def test_short_secret_cannot_verify(self):
        """Test a secret below the minimum length is treated as absent."""
        authenticator = CallbackAuthenticator(callback_secret="short")

        assert authenticator.can_verify is False
        assert authenticator.verify_token("abc").code == "TOKEN_SECRET_UNAVAILABLE"
        with pytest.raises(ConfigurationError):
            authenticator.issue_token("user-1")

    def test_extract_token_sources(self):
        """Test the token is found in query, dedicated header or bearer header."""
        assert CallbackAuthenticator.extract_token({CALLBACK_TOKEN_QUERY_PARAM: "q"}, {}) == "q"
        assert CallbackAuthenticator.extract_token({"token": "t"}, {}) == "t"
        assert CallbackAuthenticator.extract_token({}, {"X-Onboarding-Callback-Token": "h"}) == "h"
        assert CallbackAuthenticator.extract_token({}, {"Authorization": "Bearer b"}) == "b"
        assert CallbackAuthenticator.extract_token({}, {}) is None


class TestCallbackHmac:
    """Test cases for callback HMAC signatures."""

    def test_valid_signature(self, authenticator, raw_body):
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body)

        assert authenticator.verify_hmac(headers, raw_body).ok is True

    def test_bare_hex_signature_accepted(self, authenticator, raw_body):
        timestamp = str(int(time.time()))
        headers = {
            SIGNATURE_HEADER: compute_callback_hmac(TEST_CALLBACK_SECRET, timestamp, raw_body),
            TIMESTAMP_HEADER: timestamp,
        }

        assert authenticator.verify_hmac(headers, raw_body).ok is True

    def test_byte_flip_fails(self, authenticator, raw_body):
        """Test flipping any body byte breaks the signature."""
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body)
        tampered = bytearray(raw_body)
        tampered[10] ^= 0x01

        result = authenticator.verify_hmac(headers, bytes(tampered))

        assert result.ok is False
        assert result.code == "HMAC_MISMATCH"

    def test_timestamp_flip_fails(self, authenticator, raw_body):
        """Test a timestamp changed after signing breaks the signature."""
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body)
        timestamp = headers[TIMESTAMP_HEADER]
        headers[TIMESTAMP_HEADER] = timestamp[:-1] + str((int(timestamp[-1]) + 1) % 10)

        result = authenticator.verify_hmac(headers, raw_body)

        assert result.ok is False
        assert result.code == "HMAC_MISMATCH"

    def test_signature_flip_fails(self, authenticator, raw_body):
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body)
        signature = headers[SIGNATURE_HEADER]
        flipped = "0" if signature[-1] != "0" else "1"
        headers[SIGNATURE_HEADER] = signature[:-1] + flipped

        result = authenticator.verify_hmac(headers, raw_body)

        assert result.ok is False
        assert result.code == "HMAC_MISMATCH"

    def test_stale_timestamp(self, authenticator, raw_body):
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body, int(time.time()) - 301)

        assert authenticator.verify_hmac(headers, raw_body).code == "HMAC_TIMESTAMP_EXPIRED"

    def test_malformed_headers(self, authenticator, raw_body):
        assert authenticator.verify_hmac({}, raw_body).code == "MISSING_HMAC"
        assert authenticator.verify_hmac(
            {SIGNATURE_HEADER: "nothex", TIMESTAMP_HEADER: "1"}, raw_body
        ).code == "INVALID_HMAC_SIGNATURE_FORMAT"
        assert authenticator.verify_hmac(
            {SIGNATURE_HEADER: "a" * 64, TIMESTAMP_HEADER: "soon"}, raw_body
        ).code == "INVALID_HMAC_TIMESTAMP"

    def test_normalize_hex_signature(self):
        assert normalize_hex_signature("sha256=" + "AB" * 32) == "ab" * 32
        assert normalize_hex_signature("ab" * 31) is None
        assert normalize_hex_signature(None) is None


class TestCallbackAuthenticate:
    """Test cases for the combined callback check."""

    def test_no_credentials_allowed_when_not_required(self, authenticator, raw_body):
        assert authenticator.authenticate({}, {}, raw_body).ok is True

    def test_no_credentials_rejected_when_signature_required(self, raw_body):
        authenticator = CallbackAuthenticator(callback_secret=TEST_CALLBACK_SECRET, require_signature=True)

        result = authenticator.authenticate({}, {}, raw_body)

        assert result.code == "MISSING_CREDENTIALS"

    def test_required_hmac_missing(self, authenticator, raw_body):
        authenticator.require_hmac = True
        issued = authenticator.issue_token("user-1")

        result = authenticator.authenticate({CALLBACK_TOKEN_QUERY_PARAM: issued.token}, {}, raw_body)

        assert result.code == "MISSING_HMAC"

    def test_token_and_hmac_both_checked(self, authenticator, raw_body):
        """Test a valid token does not excuse a bad signature."""
        issued = authenticator.issue_token("urn:schac:personalUniqueCode:es:uni:12345")
        headers = sign_callback_body(TEST_CALLBACK_SECRET, raw_body)
        headers[TOKEN_HEADER] = issued.token

        assert authenticator.authenticate({}, headers, raw_body).ok is True
        assert authenticator.authenticate({}, headers, raw_body + b" ").code == "HMAC_MISMATCH"


class TestSignedCallbackUrl:
    """Test cases for callback URL signing."""

    def test_appends_token(self, authenticator):
        url = authenticator.build_signed_callback_url(
            "https://marketplace.example.com/onboarding/callback?x=1",
            {"stableUserId": "user-1", "institutionId": "uni.example.edu"},
        )

        query = parse_qs(urlparse(url).query)
        assert query["x"] == ["1"]
        result = authenticator.verify_token(query[CALLBACK_TOKEN_QUERY_PARAM][0], {"stableUserId": "user-1"})
        assert result.ok is True

    def test_unsigned_without_secret(self):
        authenticator = CallbackAuthenticator()
        base = "https://marketplace.example.com/onboarding/callback"

        assert authenticator.build_signed_callback_url(base) == base

    def test_required_signature_without_secret(self):
        authenticator = CallbackAuthenticator(require_signature=True)

        with pytest.raises(ConfigurationError):
            authenticator.build_signed_callback_url("https://marketplace.example.com/onboarding/callback")
