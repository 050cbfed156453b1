"""
Self-registration of institutions as marketplace consumers or providers.

Two kinds of callers are accepted:

- institutional services holding the shared API key (``x-api-key``), which
  supply every field in the request body;
- institutional backends holding a provisioning token
  (``Authorization: Bearer``), whose identity fields are taken from the
  verified token and never from the body.
"""

import hmac
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from shared.config import MIN_SECRET_LENGTH
from shared.errors import (
    AuthenticationError,
    BridgeException,
    ConfigurationError,
    ConflictError,
    ValidationError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..errors import RegistryTransactionError, RegistryUnavailableError
from ..registry.contract import InstitutionRegistry
from ..registry.domains import normalize_backend_base_url, normalize_organization_domain
from ..registry.resolver import BackendResolver
from ..tokens.provisioning import (
    CONSUMER,
    EMAIL_PATTERN,
    PROVIDER,
    TokenCodec,
    extract_bearer_token,
    require_email,
    require_string,
    token_audience,
)

API_KEY = "api_key"
PROVISIONING_TOKEN = "provisioning_token"

WALLET_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Revert reasons that mean the registration clashes with existing state.
CONFLICT_MARKERS = ("already exists", "AccessControlUnauthorizedAccount")

ORGANIZATION_LABEL = "Organization (schacHomeOrganization)"


@dataclass(frozen=True)
class RegistrationCredential:
    """How a registration request authenticated."""

    method: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_token(self) -> bool:
        return self.method == PROVISIONING_TOKEN

    @property
    def token_type(self) -> Optional[str]:
        return self.claims.get("type") if self.is_token else None


@dataclass(frozen=True)
class RegistrationOutcome:
    status_code: int
    body: Dict[str, Any]


def is_valid_wallet(address: Any) -> bool:
    return isinstance(address, str) and bool(WALLET_PATTERN.match(address))


def validate_auth_uri(auth_uri: Any) -> str:
    """A provider auth endpoint: https, ends with ``/auth``, no trailing slash."""
    if not auth_uri or not isinstance(auth_uri, str):
        raise ValidationError("authURI is required")
    trimmed = auth_uri.strip()
    if not trimmed.startswith("https://"):
        raise ValidationError("authURI must start with https://")
    if trimmed.endswith("/"):
        raise ValidationError("authURI must not end with a trailing slash")
    if not trimmed.endswith("/auth"):
        raise ValidationError("authURI must end with /auth")
    if not 12 <= len(trimmed) <= 255:
        raise ValidationError("authURI length must be between 12 and 255 characters")
    return trimmed


class RegistrationGateway:
    """Validates registration requests and drives the registry writes."""

    def __init__(
        self,
        codec: TokenCodec,
        resolver: BackendResolver,
        registry: Optional[InstitutionRegistry],
        api_key: Optional[str] = None,
        marketplace_base_url: Optional[str] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.codec = codec
        self.resolver = resolver
        self.registry = registry
        self.api_key = api_key
        self.marketplace_base_url = marketplace_base_url.rstrip("/") if marketplace_base_url else None
        self.metrics = metrics
        self.logger = get_logger("institutions.registration")

    def _record(self, kind: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("registrations_total", kind=kind, outcome=outcome)

    def _require_registry(self) -> InstitutionRegistry:
        if self.registry is None:
            raise ConfigurationError(
                "Institution registry is not configured",
                code="REGISTRY_NOT_CONFIGURED",
            )
        return self.registry

    # Authentication

    def authenticate(self, headers: Mapping[str, str]) -> RegistrationCredential:
        """Accept the shared API key or a provisioning token; anything else is 401."""
        lowered = {key.lower(): value for key, value in headers.items()}

        presented_key = lowered.get("x-api-key")
        if presented_key:
            expected = self.api_key
            if not expected or len(expected) < MIN_SECRET_LENGTH:
                self.logger.error("Institutional services API key not configured")
                raise ConfigurationError()
            if not hmac.compare_digest(presented_key.encode("utf-8"), expected.encode("utf-8")):
                self.logger.warning("Invalid API key")
                raise AuthenticationError()
            return RegistrationCredential(method=API_KEY)

        token = extract_bearer_token(lowered.get("authorization"))
        if token:
            if not self.marketplace_base_url:
                raise ConfigurationError(
                    "Marketplace base URL is not configured",
                    code="MARKETPLACE_URL_UNAVAILABLE",
                )
            try:
                claims = self.codec.verify(token, issuer=self.marketplace_base_url)
            except AuthenticationError as e:
                self.logger.warning("Invalid provisioning token", code=e.code)
                if self.metrics:
                    self.metrics.increment_counter("provisioning_token_verifications_total", outcome=e.code)
                raise AuthenticationError()
            if self.metrics:
                self.metrics.increment_counter("provisioning_token_verifications_total", outcome="ok")
            return RegistrationCredential(method=PROVISIONING_TOKEN, claims=claims)

        self.logger.warning("Missing registration credentials")
        raise AuthenticationError()

    # Consumer

    async def register_consumer(self, credential: RegistrationCredential,
                                body: Mapping[str, Any]) -> RegistrationOutcome:
        """Grant the institution role to a wallet and record its backend URL."""
        if credential.is_token and credential.token_type != CONSUMER:
            self._record("consumer", "token_type_mismatch")
            raise ValidationError(
                "Provider provisioning token is not valid for consumer registration",
                code="TOKEN_TYPE_MISMATCH",
            )

        wallet = body.get("walletAddress")
        if not is_valid_wallet(wallet):
            raise ValidationError("Invalid wallet address format", code="INVALID_WALLET_ADDRESS")

        if credential.is_token:
            organization = require_string(credential.claims.get("consumerOrganization"), ORGANIZATION_LABEL)
            audience = token_audience(credential.claims)
        else:
            organization = require_string(body.get("organization"), ORGANIZATION_LABEL)
            audience = None

        requested_backend = body.get("backendUrl")
        backend_url = normalize_backend_base_url(requested_backend)
        if requested_backend and not backend_url:
            raise ValidationError("Invalid backendUrl format (must be http:// or https:// and a base URL)")
        if not backend_url and audience:
            backend_url = normalize_backend_base_url(audience)

        normalized_org = normalize_organization_domain(organization)
        if not normalized_org:
            raise ValidationError(f"Invalid {ORGANIZATION_LABEL}")

        registry = self._require_registry()

        try:
            existing_wallet = await registry.resolve_organization(normalized_org)
            if existing_wallet:
                if existing_wallet.lower() != wallet.lower():
                    self.logger.warning(
                        "Organization already registered to different wallet",
                        organization=normalized_org,
                        existing_wallet=existing_wallet,
                    )
                    self._record("consumer", "conflict")
                    raise ConflictError("Organization already registered to a different wallet",
                                        code="ORGANIZATION_CONFLICT")

                backend_tx_hash = None
                if backend_url:
                    backend_tx_hash = await self._refresh_backend(registry, wallet, normalized_org, backend_url)

                self.logger.info("Institution already registered", organization=normalized_org, wallet=wallet)
                self._record("consumer", "already_registered")
                return RegistrationOutcome(200, {
                    "success": True,
                    "alreadyRegistered": True,
                    "walletAddress": wallet,
                    "organization": normalized_org,
                    "backendUrl": backend_url,
                    "backendTxHash": backend_tx_hash,
                })

            self.logger.info("Granting institution role", organization=normalized_org, wallet=wallet)
            grant_role_tx_hash = await registry.grant_institution_role(wallet, normalized_org)

            backend_tx_hash = None
            if backend_url:
                backend_tx_hash = await registry.set_backend(wallet, normalized_org, backend_url)
        except (RegistryTransactionError, RegistryUnavailableError) as e:
            self._record("consumer", "failed")
            raise self._registry_failure(e, "Consumer registration failed",
                                         "Failed to register consumer institution")

        self._record("consumer", "registered")
        return RegistrationOutcome(201, {
            "success": True,
            "walletAddress": wallet,
            "grantRoleTxHash": grant_role_tx_hash,
            "organization": normalized_org,
            "backendUrl": backend_url,
            "backendTxHash": backend_tx_hash,
        })

    async def _refresh_backend(self, registry: InstitutionRegistry, wallet: str,
                               organization: str, backend_url: str) -> Optional[str]:
        """Update the recorded backend of an existing registration when it changed."""
        try:
            current = normalize_backend_base_url(await self.resolver.read_backend(organization))
            if current == backend_url:
                return None
            return await registry.set_backend(wallet, organization, backend_url)
        except (RegistryTransactionError, RegistryUnavailableError) as e:
            self.logger.warning("Backend update failed", organization=organization, error=e.message)
            return None

    # Provider

    async def register_provider(self, credential: RegistrationCredential,
                                body: Mapping[str, Any]) -> RegistrationOutcome:
        """Register a wallet as lab provider and grant it the institution role."""
        if credential.is_token:
            claims = credential.claims
            if credential.token_type != PROVIDER:
                self._record("provider", "token_type_mismatch")
                raise ValidationError(
                    "Consumer provisioning token is not valid for provider registration",
                    code="TOKEN_TYPE_MISMATCH",
                )
            name = require_string(claims.get("providerName"), "Provider name")
            email = require_email(claims.get("providerEmail"), "provider email")
            organization = require_string(claims.get("providerOrganization"), ORGANIZATION_LABEL)
            country = require_string(claims.get("providerCountry") or body.get("country"), "Country")
            public_base_url = claims.get("publicBaseUrl") or token_audience(claims)
            if public_base_url:
                auth_uri = f"{public_base_url.rstrip('/')}/auth"
            else:
                auth_uri = body.get("authURI")
        else:
            name = require_string(body.get("name"), "Provider name")
            email = body.get("email")
            country = body.get("country")
            organization = body.get("organization")
            auth_uri = body.get("authURI")

        wallet = body.get("walletAddress")
        if not is_valid_wallet(wallet):
            raise ValidationError("Invalid wallet address format", code="INVALID_WALLET_ADDRESS")

        if not credential.is_token:
            if not isinstance(email, str) or not EMAIL_PATTERN.match(email.strip()):
                raise ValidationError("Invalid email format")
            email = email.strip()
            country = require_string(country, "Country")

        auth_uri = validate_auth_uri(auth_uri)

        organization = require_string(organization, ORGANIZATION_LABEL)
        normalized_org = normalize_organization_domain(organization)
        if not normalized_org:
            raise ValidationError(f"Invalid {ORGANIZATION_LABEL}")

        registry = self._require_registry()

        try:
            needs_registration = not await registry.is_provider(wallet)

            needs_role_grant = True
            existing_wallet = await registry.resolve_organization(normalized_org)
            if existing_wallet:
                if existing_wallet.lower() != wallet.lower():
                    self._record("provider", "conflict")
                    raise ConflictError("Organization already registered to a different wallet",
                                        code="ORGANIZATION_CONFLICT")
                needs_role_grant = False

            if not needs_registration and not needs_role_grant:
                self._record("provider", "already_registered")
                return RegistrationOutcome(200, {
                    "success": True,
                    "alreadyRegistered": True,
                    "walletAddress": wallet,
                    "organization": normalized_org,
                })

            tx_hashes: List[str] = []
            if needs_registration:
                self.logger.info("Adding provider", wallet=wallet)
                tx_hashes.append(await registry.add_provider(name, wallet, email, country, auth_uri))
            if needs_role_grant:
                self.logger.info("Granting institution role", organization=normalized_org, wallet=wallet)
                tx_hashes.append(await registry.grant_institution_role(wallet, normalized_org))
        except (RegistryTransactionError, RegistryUnavailableError) as e:
            self._record("provider", "failed")
            raise self._registry_failure(e, "Provider registration failed", "Failed to register provider")

        self._record("provider", "registered")
        return RegistrationOutcome(201, {
            "success": True,
            "walletAddress": wallet,
            "organization": normalized_org,
            "txHashes": tx_hashes,
        })

    def _registry_failure(self, error: BridgeException, conflict_prefix: str, message: str) -> BridgeException:
        reason = getattr(error, "reason", None) or error.message
        self.logger.error("Registry write failed", error=reason)
        if any(marker in reason for marker in CONFLICT_MARKERS):
            return ConflictError(f"{conflict_prefix}: {reason}", code="REGISTRATION_CONFLICT")
        return BridgeException("REGISTRATION_FAILED", message, status_code=500)
