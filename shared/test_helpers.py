"""
Test helper functions and factory methods for the Institutional Trust Bridge.
"""

import time
from typing import Any, Dict, Optional, Union

import jwt

from shared.config import ServiceConfig, get_config
from service_institutions.app.tokens.callback import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_callback_hmac

TEST_SECRET = "test-provisioning-secret-0123456789abcdef"
TEST_CALLBACK_SECRET = "test-callback-secret-0123456789abcdefgh"
TEST_API_KEY = "test-institutional-api-key-0123456789abc"
TEST_MARKETPLACE_URL = "https://marketplace.example.com"
TEST_BACKEND_URL = "https://ib.uni.example.edu"
TEST_ORGANIZATION = "uni.example.edu"
TEST_WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20


class TestDataFactory:
    """Factory for creating test data."""
    __test__ = False

    @staticmethod
    def create_sso_session(**overrides) -> Dict[str, Any]:
        """Create an SSO session for an institutional staff member."""
        session = {
            "isSSO": True,
            "id": "jdoe",
            "email": "jdoe@uni.example.edu",
            "name": "Jane Doe",
            "affiliation": TEST_ORGANIZATION,
            "role": "staff",
            "scopedRole": "staff@uni.example.edu",
            "personalUniqueCode": "urn:schac:personalUniqueCode:es:uni:12345",
            "samlAssertion": "<saml:Assertion>signed</saml:Assertion>",
        }
        session.update(overrides)
        return session

    @staticmethod
    def create_user_data(**overrides) -> Dict[str, Any]:
        """Create onboarding user data (camelCase, as received from SSO)."""
        user = {
            "id": "jdoe",
            "email": "jdoe@uni.example.edu",
            "name": "Jane Doe",
            "affiliation": TEST_ORGANIZATION,
            "role": "student",
            "scopedRole": "student@uni.example.edu",
        }
        user.update(overrides)
        return user

    @staticmethod
    def create_provider_payload(**overrides) -> Dict[str, Any]:
        payload = {
            "type": "provider",
            "marketplaceBaseUrl": TEST_MARKETPLACE_URL,
            "publicBaseUrl": TEST_BACKEND_URL,
            "providerName": "UNI",
            "providerEmail": "labs@uni.example.edu",
            "providerOrganization": TEST_ORGANIZATION,
            "providerCountry": "ES",
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create_consumer_payload(**overrides) -> Dict[str, Any]:
        payload = {
            "type": "consumer",
            "marketplaceBaseUrl": TEST_MARKETPLACE_URL,
            "publicBaseUrl": TEST_BACKEND_URL,
            "consumerName": "UNI",
            "consumerOrganization": TEST_ORGANIZATION,
            "responsiblePerson": "Jane Doe",
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create_callback_body(**overrides) -> Dict[str, Any]:
        body = {
            "status": "SUCCESS",
            "stableUserId": "urn:schac:personalUniqueCode:es:uni:12345",
            "institutionId": TEST_ORGANIZATION,
            "sessionId": "sess-123",
            "credentialId": "cred-abc",
            "aaguid": "00000000-0000-0000-0000-000000000000",
            "timestamp": "2025-12-13T10:30:00.000Z",
        }
        body.update(overrides)
        return body


class MockTokenGenerator:
    """Mints tokens with arbitrary claims for negative-path tests."""

    def __init__(self, secret: str = TEST_SECRET):
        self.secret = secret

    def generate(self, claims: Dict[str, Any], expires_in: int = 300, issued_at: Optional[int] = None) -> str:
        now = int(time.time()) if issued_at is None else issued_at
        payload = {"iat": now, "exp": now + expires_in}
        payload.update(claims)
        return jwt.encode(payload, self.secret, algorithm="HS256")


def sign_callback_body(secret: str, body: Union[str, bytes], timestamp: Optional[Union[int, str]] = None) -> Dict[str, str]:
    """HMAC headers an institutional backend would send with a callback."""
    timestamp = str(int(time.time()) if timestamp is None else timestamp)
    return {
        SIGNATURE_HEADER: "sha256=" + compute_callback_hmac(secret, timestamp, body),
        TIMESTAMP_HEADER: timestamp,
    }


class TestEnvironment:
    """Test environment configuration."""
    __test__ = False

    @staticmethod
    def get_mock_config() -> Dict[str, Any]:
        return {
            "env": "local",
            "log_level": "debug",
            "marketplace_base_url": TEST_MARKETPLACE_URL,
            "provisioning_secret": TEST_SECRET,
            "callback_secret": TEST_CALLBACK_SECRET,
            "institutional_services_api_key": TEST_API_KEY,
            "public_key_path": "/nonexistent/marketplace-public-key.pem",
        }

    @staticmethod
    def get_service_config(**overrides) -> ServiceConfig:
        settings = TestEnvironment.get_mock_config()
        settings.update(overrides)
        return get_config("institutions", 8020, **settings)
