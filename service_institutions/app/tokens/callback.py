"""
Authentication of onboarding callbacks sent by institutional backends.

Two independent checks can be applied to an inbound callback:

- a short-lived HS256 bearer token that the marketplace minted and embedded
  in the callback URL it handed to the institutional backend;
- an HMAC-SHA256 signature over ``"{timestamp}.{rawBody}"`` carried in the
  ``x-onboarding-signature`` / ``x-onboarding-timestamp`` headers.

Verification never raises: it returns a CallbackVerification with a
machine-readable code. Callers must not echo that code to the remote side.
"""

import hashlib
import hmac
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import jwt

from shared.config import (
    BaseConfig,
    DEFAULT_CALLBACK_HMAC_MAX_AGE,
    DEFAULT_CALLBACK_TOKEN_TTL,
    MIN_SECRET_LENGTH,
)
from shared.errors import ConfigurationError
from shared.logging import get_logger
from .provisioning import extract_bearer_token

CALLBACK_ISSUER = "marketplace-onboarding-callback"
CALLBACK_AUDIENCE = "marketplace-onboarding"
CALLBACK_TYPE = "onboarding-callback"
CALLBACK_TOKEN_QUERY_PARAM = "cb_token"

TOKEN_HEADER = "x-onboarding-callback-token"
SIGNATURE_HEADER = "x-onboarding-signature"
TIMESTAMP_HEADER = "x-onboarding-timestamp"

_HEX_SIGNATURE = re.compile(r"^[a-fA-F0-9]{64}$")

# Claims cross-checked against the caller's expectations, in order.
_CORRELATION_CLAIMS = (
    ("stableUserId", "STABLE_USER_MISMATCH"),
    ("institutionId", "INSTITUTION_MISMATCH"),
    ("sessionId", "SESSION_MISMATCH"),
)


@dataclass(frozen=True)
class CallbackVerification:
    """Outcome of a callback check."""

    ok: bool
    code: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, payload: Optional[Dict[str, Any]] = None) -> "CallbackVerification":
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, code: str) -> "CallbackVerification":
        return cls(ok=False, code=code)


@dataclass(frozen=True)
class CallbackToken:
    token: str
    expires_at: int
    ttl_seconds: int


def compute_callback_hmac(secret: str, timestamp: str, raw_body: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{rawBody}"``."""
    body = raw_body.encode("utf-8") if isinstance(raw_body, str) else (raw_body or b"")
    message = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def normalize_hex_signature(value: Optional[str]) -> Optional[str]:
    """Accept ``sha256=<hex>`` or bare hex; return lowercase hex or None."""
    if not value or not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256="):]
    if not _HEX_SIGNATURE.match(candidate):
        return None
    return candidate.lower()


class CallbackAuthenticator:
    """Verifies onboarding callbacks by bearer token and/or HMAC signature."""

    def __init__(
        self,
        callback_secret: Optional[str] = None,
        fallback_secret: Optional[str] = None,
        require_signature: bool = False,
        require_token: bool = False,
        require_hmac: bool = False,
        token_ttl_seconds: int = DEFAULT_CALLBACK_TOKEN_TTL,
        hmac_max_age_seconds: int = DEFAULT_CALLBACK_HMAC_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = callback_secret or fallback_secret or ""
        self.require_signature = require_signature
        self.require_token = require_token
        self.require_hmac = require_hmac
        self.token_ttl_seconds = token_ttl_seconds if token_ttl_seconds > 0 else DEFAULT_CALLBACK_TOKEN_TTL
        self.hmac_max_age_seconds = (
            hmac_max_age_seconds if hmac_max_age_seconds > 0 else DEFAULT_CALLBACK_HMAC_MAX_AGE
        )
        self._clock = clock
        self.logger = get_logger("institutions.tokens.callback")

    @classmethod
    def from_config(cls, config: BaseConfig, **kwargs) -> "CallbackAuthenticator":
        return cls(
            callback_secret=config.callback_secret,
            fallback_secret=config.session_secret,
            require_signature=config.callback_require_signature,
            require_token=config.callback_require_token,
            require_hmac=config.callback_require_hmac,
            token_ttl_seconds=config.callback_token_ttl_seconds,
            hmac_max_age_seconds=config.callback_hmac_max_age_seconds,
            **kwargs,
        )

    @property
    def secret(self) -> Optional[str]:
        """The signing secret, or None when absent or shorter than the minimum."""
        if self._secret and len(self._secret) >= MIN_SECRET_LENGTH:
            return self._secret
        return None

    @property
    def can_verify(self) -> bool:
        return self.secret is not None

    def _require_secret(self) -> str:
        secret = self.secret
        if not secret:
            raise ConfigurationError(
                "Onboarding callback secret is required "
                f"(set BRIDGE_CALLBACK_SECRET or BRIDGE_SESSION_SECRET with >= {MIN_SECRET_LENGTH} chars)",
                code="CALLBACK_SECRET_UNAVAILABLE",
            )
        return secret

    # Token

    def issue_token(self, stable_user_id: Optional[str] = None, institution_id: Optional[str] = None,
                    session_id: Optional[str] = None) -> CallbackToken:
        secret = self._require_secret()
        now = int(self._clock())
        ttl = self.token_ttl_seconds

        claims: Dict[str, Any] = {"typ": CALLBACK_TYPE, "iat": now}
        if stable_user_id:
            claims["stableUserId"] = stable_user_id
        if institution_id:
            claims["institutionId"] = institution_id
        if session_id:
            claims["sessionId"] = session_id
        claims.update({"iss": CALLBACK_ISSUER, "aud": CALLBACK_AUDIENCE, "exp": now + ttl})

        token = jwt.encode(claims, secret, algorithm="HS256")
        return CallbackToken(token=token, expires_at=now + ttl, ttl_seconds=ttl)

    @staticmethod
    def extract_token(query: Mapping[str, str], headers: Mapping[str, str]) -> Optional[str]:
        """Find a callback token in the query string or headers."""
        for name in (CALLBACK_TOKEN_QUERY_PARAM, "token"):
            value = query.get(name)
            if value:
                return value

        lowered = _lower_keys(headers)
        header_token = lowered.get(TOKEN_HEADER)
        if header_token:
            return header_token

        return extract_bearer_token(lowered.get("authorization"))

    def verify_token(self, token: Optional[str],
                     expected: Optional[Mapping[str, Any]] = None) -> CallbackVerification:
        if not token or not isinstance(token, str):
            return CallbackVerification.failure("MISSING_TOKEN")

        secret = self.secret
        if not secret:
            return CallbackVerification.failure("TOKEN_SECRET_UNAVAILABLE")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                issuer=CALLBACK_ISSUER,
                audience=CALLBACK_AUDIENCE,
            )
        except jwt.ExpiredSignatureError:
            return CallbackVerification.failure("TOKEN_EXPIRED")
        except jwt.PyJWTError as e:
            self.logger.debug("Callback token rejected", error=str(e))
            return CallbackVerification.failure("TOKEN_INVALID")

        if payload.get("typ") != CALLBACK_TYPE:
            return CallbackVerification.failure("INVALID_TOKEN_TYPE")

        expected = expected or {}
        for claim, code in _CORRELATION_CLAIMS:
            wanted = expected.get(claim)
            actual = payload.get(claim)
            if wanted and actual and wanted != actual:
                return CallbackVerification.failure(code)

        return CallbackVerification.success(payload)

    # HMAC

    def verify_hmac(self, headers: Mapping[str, str], raw_body: Union[str, bytes]) -> CallbackVerification:
        lowered = _lower_keys(headers)
        signature_header = lowered.get(SIGNATURE_HEADER)
        timestamp_header = lowered.get(TIMESTAMP_HEADER)

        if not signature_header and not timestamp_header:
            return CallbackVerification.failure("MISSING_HMAC")

        signature = normalize_hex_signature(signature_header)
        if not signature:
            return CallbackVerification.failure("INVALID_HMAC_SIGNATURE_FORMAT")

        timestamp_raw = (timestamp_header or "").strip()
        try:
            timestamp = float(timestamp_raw)
        except ValueError:
            return CallbackVerification.failure("INVALID_HMAC_TIMESTAMP")
        if not math.isfinite(timestamp):
            return CallbackVerification.failure("INVALID_HMAC_TIMESTAMP")

        if abs(int(self._clock()) - timestamp) > self.hmac_max_age_seconds:
            return CallbackVerification.failure("HMAC_TIMESTAMP_EXPIRED")

        secret = self.secret
        if not secret:
            return CallbackVerification.failure("HMAC_SECRET_UNAVAILABLE")

        expected = compute_callback_hmac(secret, timestamp_raw, raw_body)
        if not hmac.compare_digest(bytes.fromhex(expected), bytes.fromhex(signature)):
            return CallbackVerification.failure("HMAC_MISMATCH")

        return CallbackVerification.success()

    # Composition

    def authenticate(
        self,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        raw_body: Union[str, bytes],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> CallbackVerification:
        """Apply every check that is presented or required; fail closed on any failure."""
        token = self.extract_token(query, headers)
        lowered = _lower_keys(headers)
        hmac_presented = bool(lowered.get(SIGNATURE_HEADER) or lowered.get(TIMESTAMP_HEADER))

        if self.require_signature and not token and not hmac_presented:
            return CallbackVerification.failure("MISSING_CREDENTIALS")

        payload = None
        if token or self.require_token:
            result = self.verify_token(token, expected)
            if not result.ok:
                return result
            payload = result.payload

        if hmac_presented or self.require_hmac:
            result = self.verify_hmac(headers, raw_body)
            if not result.ok:
                return result

        return CallbackVerification.success(payload)

    def build_signed_callback_url(self, base_url: str, claims: Optional[Mapping[str, Any]] = None) -> str:
        """Append a fresh callback token to ``base_url`` when a secret is available."""
        if not self.can_verify:
            if self.require_signature:
                raise ConfigurationError(
                    "Onboarding callback signature is required but no secret is configured",
                    code="CALLBACK_SECRET_UNAVAILABLE",
                )
            return base_url

        claims = claims or {}
        issued = self.issue_token(
            stable_user_id=claims.get("stableUserId"),
            institution_id=claims.get("institutionId"),
            session_id=claims.get("sessionId"),
        )

        parsed = urlparse(base_url)
        query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                 if k != CALLBACK_TOKEN_QUERY_PARAM]
        query.append((CALLBACK_TOKEN_QUERY_PARAM, issued.token))
        return urlunparse(parsed._replace(query=urlencode(query)))


def _lower_keys(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}
