"""
Provisioning token codec for institutional self-registration.

A provisioning token is a short-lived HS256 JWT minted for an authenticated
institutional staff member. It carries the identity fields the institution
will be registered with; the registration gateway reads those fields from
the verified token and never from the request body.
"""

import hashlib
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

import jwt

from shared.config import (
    BaseConfig,
    DEFAULT_PROVISIONING_TOKEN_MAX_TTL,
    DEFAULT_PROVISIONING_TOKEN_TTL,
    MIN_SECRET_LENGTH,
)
from shared.errors import ConfigurationError, ValidationError
from shared.logging import get_logger
from ..errors import (
    AudienceMismatchError,
    InvalidTokenTypeError,
    IssuerMismatchError,
    MissingIdentityFieldError,
    TokenExpiredError,
    TokenInvalidError,
)

ALGORITHM = "HS256"

PROVIDER = "provider"
CONSUMER = "consumer"
TOKEN_TYPES = (PROVIDER, CONSUMER)

# Identity fields a token may lock, per token type.
IDENTITY_FIELDS: Dict[str, tuple] = {
    PROVIDER: ("providerName", "providerEmail", "providerOrganization", "providerCountry"),
    CONSUMER: ("consumerName", "consumerOrganization"),
}

# Identity fields that must be non-blank at issuance.
REQUIRED_IDENTITY_FIELDS: Dict[str, tuple] = {
    PROVIDER: ("providerName", "providerEmail", "providerOrganization"),
    CONSUMER: ("consumerName", "consumerOrganization"),
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class IssuedToken:
    """A freshly signed provisioning token and what it locks."""

    token: str
    expires_at: str
    locked_fields: List[str]
    payload: Dict[str, Any]
    jti: str


class TokenCodec:
    """Issues and verifies provisioning tokens with a symmetric secret."""

    def __init__(
        self,
        secret: Optional[str],
        default_ttl_seconds: int = DEFAULT_PROVISIONING_TOKEN_TTL,
        max_ttl_seconds: int = DEFAULT_PROVISIONING_TOKEN_MAX_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.default_ttl_seconds = default_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self._clock = clock
        self.logger = get_logger("institutions.tokens.provisioning")

    @classmethod
    def from_config(cls, config: BaseConfig, **kwargs) -> "TokenCodec":
        return cls(
            secret=config.provisioning_secret or config.session_secret,
            default_ttl_seconds=config.provisioning_token_ttl_seconds,
            max_ttl_seconds=config.provisioning_token_max_ttl_seconds,
            **kwargs,
        )

    @property
    def has_secret(self) -> bool:
        return bool(self._secret) and len(self._secret) >= MIN_SECRET_LENGTH

    def _require_secret(self) -> str:
        if not self.has_secret:
            raise ConfigurationError(
                "Provisioning token secret is not configured",
                code="PROVISIONING_SECRET_UNAVAILABLE",
            )
        return self._secret

    def bounded_ttl(self, ttl_seconds: Optional[int] = None) -> int:
        """Clamp a requested TTL to the configured maximum."""
        if ttl_seconds is None or ttl_seconds <= 0:
            ttl_seconds = self.default_ttl_seconds
        return int(min(ttl_seconds, self.max_ttl_seconds))

    def issue(
        self,
        payload: Mapping[str, Any],
        audience: str,
        issuer: str,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        """Sign a provisioning payload.

        Raises ConfigurationError when no secret is configured and
        MissingIdentityFieldError when a required identity field is blank.
        Both are raised before anything is signed.
        """
        secret = self._require_secret()

        token_type = payload.get("type")
        if token_type not in TOKEN_TYPES:
            raise ValidationError(
                "Provisioning token type must be 'provider' or 'consumer'",
                code="INVALID_TOKEN_TYPE",
            )

        for field in REQUIRED_IDENTITY_FIELDS[token_type]:
            value = payload.get(field)
            if not isinstance(value, str) or not value.strip():
                raise MissingIdentityFieldError(field)

        ttl = self.bounded_ttl(ttl_seconds)
        issued_at = int(self._clock())
        expires_at = issued_at + ttl
        jti = str(uuid.uuid4())

        signed_payload = dict(payload)
        signed_payload["issuedAt"] = _iso(issued_at)
        signed_payload["expiresAt"] = _iso(expires_at)

        claims = dict(signed_payload)
        claims.update({
            "iat": issued_at,
            "exp": expires_at,
            "iss": issuer,
            "aud": audience,
            "jti": jti,
        })

        token = jwt.encode(claims, secret, algorithm=ALGORITHM)

        self.logger.info(
            "Provisioning token issued",
            token_type=token_type,
            audience=audience,
            ttl_seconds=ttl,
            jti=jti,
        )

        return IssuedToken(
            token=token,
            expires_at=signed_payload["expiresAt"],
            locked_fields=locked_fields(signed_payload),
            payload=signed_payload,
            jti=jti,
        )

    def verify(self, token: str, issuer: Optional[str] = None,
               audience: Optional[str] = None) -> Dict[str, Any]:
        """Verify a provisioning token and return its claims."""
        secret = self._require_secret()

        if not token or not isinstance(token, str):
            raise TokenInvalidError("Missing provisioning token")

        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                issuer=issuer,
                audience=audience,
                options={
                    "require": ["exp", "iat", "iss"],
                    "verify_aud": audience is not None,
                },
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Provisioning token expired")
        except jwt.InvalidAudienceError:
            raise AudienceMismatchError()
        except jwt.InvalidIssuerError:
            raise IssuerMismatchError()
        except jwt.PyJWTError as e:
            self.logger.warning("Provisioning token rejected", error=str(e))
            raise TokenInvalidError("Invalid provisioning token", {"reason": str(e)})

        if claims.get("type") not in TOKEN_TYPES:
            raise InvalidTokenTypeError("Provisioning token type must be 'provider' or 'consumer'")

        return claims


def locked_fields(payload: Mapping[str, Any]) -> List[str]:
    """Identity fields present in a payload, in declaration order."""
    fields = IDENTITY_FIELDS.get(payload.get("type"), ())
    return [name for name in fields if isinstance(payload.get(name), str) and payload[name].strip()]


def assertion_reference(assertion: str) -> str:
    """Reference a federated assertion by digest instead of by value."""
    return "sha256:" + hashlib.sha256(assertion.encode("utf-8")).hexdigest()


def token_audience(claims: Mapping[str, Any]) -> Optional[str]:
    """First non-blank audience of a verified token."""
    audience = claims.get("aud")
    if isinstance(audience, list):
        audience = next((value for value in audience if isinstance(value, str) and value.strip()), None)
    if isinstance(audience, str) and audience.strip():
        return audience.strip()
    return None


def normalize_https_url(url: Any, label: str, allow_http: bool = False) -> str:
    """Validate an absolute base URL and drop a single trailing slash."""
    if not url or not isinstance(url, str) or not url.strip():
        raise ValidationError(f"{label} is required")

    trimmed = url.strip()
    parsed = urlparse(trimmed)
    if not parsed.scheme or not parsed.netloc:
        raise ValidationError(f"{label} must be a valid URL")

    scheme = parsed.scheme.lower()
    if scheme != "https" and not (allow_http and scheme == "http"):
        raise ValidationError(f"{label} must start with https://")

    return trimmed[:-1] if trimmed.endswith("/") else trimmed


def require_string(value: Any, label: str) -> str:
    if not value or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def require_email(value: Any, label: str = "email") -> str:
    email = require_string(value, label)
    if not EMAIL_PATTERN.match(email):
        raise ValidationError(f"Invalid {label}")
    return email


def extract_bearer_token(header: Optional[str]) -> Optional[str]:
    """Return the credential of an ``Authorization: Bearer`` header, if any."""
    if not header or not isinstance(header, str):
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


def _iso(epoch_seconds: int) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")
