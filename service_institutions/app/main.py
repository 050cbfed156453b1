"""
Institutions service for the Institutional Trust Bridge.
"""

import json
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthorizationError, ConfigurationError, ValidationError
from shared.logging import set_onboarding_context
from .errors import BackendUnreachableError, InvalidResponseError, MissingUserDataError
from .keys import load_public_key_pem
from .onboarding import (
    OnboardingOrchestrator,
    OnboardingResult,
    ResultStore,
    extract_stable_user_id,
    result_from_callback,
)
from .onboarding.models import CamelModel
from .registration import RegistrationGateway
from .registry import BackendResolver, InstitutionRegistry
from .registry.domains import normalize_backend_base_url, normalize_organization_domain
from .session import SSOSession, get_sso_session, has_staff_role
from .tokens import CallbackAuthenticator, TokenCodec
from .tokens.provisioning import CONSUMER, PROVIDER, normalize_https_url

CALLBACK_PATH = "/onboarding/callback"
ONBOARDING_SSO_MESSAGE = "SSO session required for institutional onboarding"


class ProvisionTokenRequest(CamelModel):
    public_base_url: Optional[str] = None
    provider_country: Optional[str] = None


class ProvisionConsumerRequest(CamelModel):
    public_base_url: Optional[str] = None
    consumer_name: Optional[str] = None


def institution_label(domain: Optional[str]) -> str:
    """``uni.example.edu`` -> ``UNI``."""
    if not domain:
        return ""
    first = domain.strip().split(".")[0]
    return first.upper()


def result_keys(result: OnboardingResult) -> List[str]:
    """ResultStore keys a callback result is filed under."""
    keys = []
    if result.stable_user_id:
        keys.append(result.stable_user_id)
    if result.session_id:
        keys.append(f"session:{result.session_id}")
    if result.stable_user_id and result.institution_id:
        keys.append(f"{result.stable_user_id}:{result.institution_id}")
    return keys


def is_sso(session: Optional[SSOSession]) -> bool:
    return session is not None and session.is_federated


def sso_required(message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": message, "code": "SSO_REQUIRED"})


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Request body as a dict; malformed or non-object bodies read as empty."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class InstitutionsService(BaseService):
    """Institutions service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        registry: Optional[InstitutionRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        result_store: Optional[ResultStore] = None,
    ):
        super().__init__("institutions", 8020, config)

        self.token_codec = TokenCodec.from_config(self.config)
        self.callback_authenticator = CallbackAuthenticator.from_config(self.config)

        if registry is None and self.config.rpc_url and self.config.registry_address:
            registry = InstitutionRegistry.from_config(self.config)
        self.registry = registry
        self.resolver = BackendResolver(self.registry, metrics=self.metrics)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.config.backend_timeout_seconds)

        self.orchestrator = OnboardingOrchestrator.from_config(
            self.config, self.resolver, self.http_client, metrics=self.metrics
        )
        self.result_store = result_store or ResultStore(self.config.onboarding_result_ttl_seconds)
        self.registration_gateway = RegistrationGateway(
            codec=self.token_codec,
            resolver=self.resolver,
            registry=self.registry,
            api_key=self.config.institutional_services_api_key,
            marketplace_base_url=self.config.marketplace_base_url,
            metrics=self.metrics,
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            if self._owns_http_client:
                await self.http_client.aclose()

        self._setup_institution_routes()
        self._setup_onboarding_routes()

        self.app.state.institutions_service = self

    def _marketplace_base_url(self) -> str:
        if not self.config.marketplace_base_url:
            raise ConfigurationError(
                "Marketplace base URL is not configured",
                code="MARKETPLACE_URL_UNAVAILABLE",
            )
        return normalize_https_url(
            self.config.marketplace_base_url,
            "Marketplace base URL",
            allow_http=not self.config.is_production,
        )

    @staticmethod
    def _require_staff(session: Optional[SSOSession], label: str) -> SSOSession:
        if not is_sso(session):
            raise AuthorizationError(f"{label} requires SSO session")
        if not has_staff_role(session.effective_role, session.effective_scoped_role):
            raise AuthorizationError(f"{label} allowed only for institutional staff")
        return session

    def _record_issued(self, token_type: str):
        self.metrics.increment_counter("provisioning_tokens_issued_total", token_type=token_type)

    def _setup_institution_routes(self):
        """Set up provisioning and registration routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "institutions",
                "message": "Institutional Trust Bridge - Institutions Service",
                "version": "1.0.0"
            }

        @self.app.post("/institutions/provisionToken")
        async def provision_token(
            body: Optional[ProvisionTokenRequest] = None,
            session: Optional[SSOSession] = Depends(get_sso_session),
        ):
            """Provider provisioning token for institutional staff."""
            session = self._require_staff(session, "Provisioning token")
            body = body or ProvisionTokenRequest()

            public_base_url = normalize_https_url(body.public_base_url, "Public base URL")
            marketplace_base_url = self._marketplace_base_url()
            organization = normalize_organization_domain(session.home_organization or "")

            payload: Dict[str, Any] = {
                "type": PROVIDER,
                "marketplaceBaseUrl": marketplace_base_url,
                "publicBaseUrl": public_base_url,
                "providerName": (
                    session.organization_name
                    or session.institution_name
                    or institution_label(organization)
                ),
                "providerEmail": session.contact_email,
                "providerOrganization": organization,
            }
            if body.provider_country and body.provider_country.strip():
                payload["providerCountry"] = body.provider_country.strip()

            issued = self.token_codec.issue(payload, audience=public_base_url, issuer=marketplace_base_url)
            self._record_issued(PROVIDER)

            return {
                "success": True,
                "token": issued.token,
                "expiresAt": issued.expires_at,
                "lockedFields": issued.locked_fields,
                "payload": issued.payload,
            }

        @self.app.post("/institutions/provisionConsumer")
        async def provision_consumer(
            body: Optional[ProvisionConsumerRequest] = None,
            session: Optional[SSOSession] = Depends(get_sso_session),
        ):
            """Consumer-only provisioning token for institutional staff."""
            session = self._require_staff(session, "Consumer provisioning token")
            body = body or ProvisionConsumerRequest()

            public_base_url = normalize_https_url(body.public_base_url, "Public base URL")
            marketplace_base_url = self._marketplace_base_url()
            organization = normalize_organization_domain(session.home_organization or "")

            consumer_name = (
                (body.consumer_name or "").strip()
                or session.organization_name
                or session.institution_name
                or institution_label(organization)
            )
            responsible_person = (session.display or session.contact_email or "").strip()

            payload: Dict[str, Any] = {
                "type": CONSUMER,
                "marketplaceBaseUrl": marketplace_base_url,
                "publicBaseUrl": public_base_url,
                "consumerName": consumer_name,
                "consumerOrganization": organization,
                "responsiblePerson": responsible_person,
            }

            issued = self.token_codec.issue(payload, audience=public_base_url, issuer=marketplace_base_url)
            self._record_issued(CONSUMER)

            return {
                "success": True,
                "token": issued.token,
                "expiresAt": issued.expires_at,
                "lockedFields": issued.locked_fields,
                "payload": issued.payload,
            }

        @self.app.post("/institutions/registerConsumer")
        async def register_consumer(request: Request):
            """Register an institution wallet as marketplace consumer."""
            credential = self.registration_gateway.authenticate(request.headers)
            body = await read_json_body(request)
            outcome = await self.registration_gateway.register_consumer(credential, body)
            return JSONResponse(outcome.body, status_code=outcome.status_code)

        @self.app.post("/institutions/registerProvider")
        async def register_provider(request: Request):
            """Register an institution wallet as lab provider."""
            credential = self.registration_gateway.authenticate(request.headers)
            body = await read_json_body(request)
            outcome = await self.registration_gateway.register_provider(credential, body)
            return JSONResponse(outcome.body, status_code=outcome.status_code)

        @self.app.get("/.well-known/public-key.pem")
        async def public_key():
            """Marketplace public key for verifying marketplace-signed JWTs."""
            return PlainTextResponse(load_public_key_pem(self.config), media_type="application/x-pem-file")

    def _setup_onboarding_routes(self):
        """Set up WebAuthn onboarding routes."""

        @self.app.post("/onboarding/init")
        async def init_onboarding(session: Optional[SSOSession] = Depends(get_sso_session)):
            """Open an onboarding session with the user's institutional backend."""
            if not is_sso(session):
                return sso_required(ONBOARDING_SSO_MESSAGE)

            user = session.to_user_data()
            if not user.affiliation:
                raise MissingUserDataError("Missing institution affiliation in session")

            stable_user_id = extract_stable_user_id(user)
            callback_url = self.callback_authenticator.build_signed_callback_url(
                self._marketplace_base_url() + CALLBACK_PATH,
                {"stableUserId": stable_user_id, "institutionId": user.affiliation},
            )

            existing = await self.orchestrator.check_user_status(user)
            if existing.is_onboarded:
                self.logger.info("User already onboarded", institution_id=existing.institution_id)
                return {
                    "status": "already_onboarded",
                    "stableUserId": existing.stable_user_id,
                    "institutionId": existing.institution_id,
                    "credentialId": existing.credential_id,
                    "registeredAt": existing.registered_at,
                }

            onboarding_session = await self.orchestrator.initiate(user, callback_url)

            return {
                "status": "initiated",
                "sessionId": onboarding_session.session_id,
                "ceremonyUrl": onboarding_session.ceremony_url,
                "backendUrl": onboarding_session.backend_url,
                "stableUserId": onboarding_session.stable_user_id,
                "institutionId": onboarding_session.institution_id,
                "expiresAt": onboarding_session.expires_at,
                "options": onboarding_session.options,
            }

        @self.app.get("/onboarding/session")
        async def onboarding_session_data(session: Optional[SSOSession] = Depends(get_sso_session)):
            """Payload for browser-direct calls to the institutional backend."""
            if not is_sso(session):
                return sso_required(ONBOARDING_SSO_MESSAGE)

            user = session.to_user_data()
            if not user.affiliation:
                raise MissingUserDataError("Missing institution affiliation in session")
            stable_user_id = extract_stable_user_id(user)
            if not stable_user_id:
                raise MissingUserDataError("Cannot determine stable user ID from session")

            callback_url = self.callback_authenticator.build_signed_callback_url(
                self._marketplace_base_url() + CALLBACK_PATH,
                {"stableUserId": stable_user_id, "institutionId": user.affiliation},
            )
            payload = self.orchestrator.build_session_payload(user, callback_url)

            return {
                "status": "ok",
                "payload": payload,
                "meta": {
                    "stableUserId": stable_user_id,
                    "institutionId": user.affiliation,
                    "email": user.email,
                    "displayName": payload["displayName"],
                },
            }

        @self.app.get("/onboarding/status/{session_id}")
        async def onboarding_status(
            session_id: str,
            backendUrl: Optional[str] = None,
            checkLocal: bool = False,
            session: Optional[SSOSession] = Depends(get_sso_session),
        ):
            """Session status from the local callback cache and/or the institutional backend."""
            if not is_sso(session):
                return sso_required("SSO session required")

            if checkLocal:
                local = self.result_store.get(f"session:{session_id}")
                if local is not None:
                    return {"source": "callback", **local.to_dict()}

            if backendUrl:
                backend_url = normalize_backend_base_url(backendUrl)
                if not backend_url:
                    raise ValidationError("Invalid backendUrl", code="INVALID_BACKEND_URL")
                registered = await self.resolver.resolve(session.home_organization)
                if backend_url != registered:
                    raise ValidationError(
                        "backendUrl is not the institution's registered backend",
                        code="BACKEND_URL_MISMATCH",
                    )

                try:
                    report = await self.orchestrator.poll_status(session_id, backend_url)
                except (BackendUnreachableError, InvalidResponseError) as e:
                    self.logger.warning("Backend status query failed", session_id=session_id, error=e.message)
                    return {"source": "backend", "sessionId": session_id, "status": "PENDING", "error": e.message}

                if report.is_terminal:
                    result = self.orchestrator.to_result(
                        report,
                        stable_user_id=extract_stable_user_id(session.to_user_data()),
                        institution_id=session.home_organization,
                    )
                    self._store_result(result)

                return {"source": "backend", **report.to_dict()}

            return {
                "sessionId": session_id,
                "status": "UNKNOWN",
                "message": "Provide backendUrl to check with the institutional backend or wait for callback",
            }

        @self.app.post(CALLBACK_PATH)
        async def onboarding_callback(request: Request):
            """Onboarding outcome pushed by an institutional backend."""
            raw_body = await request.body()
            try:
                body = json.loads(raw_body) if raw_body else None
            except ValueError:
                body = None

            expected = {}
            if isinstance(body, dict):
                expected = {key: body.get(key) for key in ("stableUserId", "institutionId", "sessionId")}

            verification = self.callback_authenticator.authenticate(
                request.query_params, request.headers, raw_body, expected
            )
            if not verification.ok:
                self.logger.warning("Onboarding callback rejected", reason=verification.code)
                self.metrics.increment_counter("callback_verifications_total", outcome=verification.code)
                return JSONResponse(status_code=401, content={"error": "Callback rejected", "code": "CALLBACK_REJECTED"})
            self.metrics.increment_counter("callback_verifications_total", outcome="ok")

            if not isinstance(body, dict):
                raise ValidationError("Invalid JSON body", code="INVALID_JSON")

            result = result_from_callback(body)
            set_onboarding_context(result.stable_user_id, result.institution_id)
            stored = self._store_result(result)

            if result.success:
                self.logger.info("Onboarding completed", session_id=result.session_id)
            else:
                self.logger.warning("Onboarding not successful", status=result.status, error=result.error)

            return {"received": True, "status": result.status, "timestamp": stored.received_at if stored else None}

        @self.app.get(CALLBACK_PATH)
        async def onboarding_result(
            stableUserId: Optional[str] = None,
            sessionId: Optional[str] = None,
            institutionId: Optional[str] = None,
            session: Optional[SSOSession] = Depends(get_sso_session),
        ):
            """Look up a stored onboarding result."""
            if not is_sso(session):
                return sso_required("SSO session required")

            result = None
            if sessionId:
                result = self.result_store.get(f"session:{sessionId}")
            if result is None and stableUserId:
                result = self.result_store.find_by_user(stableUserId, institutionId)

            if result is None:
                return JSONResponse(status_code=404, content={"found": False, "message": "No onboarding result found"})

            return {"found": True, **result.to_dict()}

    def _store_result(self, result: OnboardingResult) -> Optional[OnboardingResult]:
        stored = None
        for key in result_keys(result):
            stored = self.result_store.put(key, result)
        if stored is not None:
            self.metrics.increment_counter("onboarding_results_stored_total", status=result.status)
        return stored

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "registry": "configured" if self.registry is not None else "not_configured",
            "provisioning_secret": "configured" if self.token_codec.has_secret else "missing",
            "callback_secret": "configured" if self.callback_authenticator.can_verify else "missing",
        }


def create_app(
    config: Optional[ServiceConfig] = None,
    registry: Optional[InstitutionRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    result_store: Optional[ResultStore] = None,
):
    """Create the institutions FastAPI application."""
    service = InstitutionsService(
        config=config,
        registry=registry,
        http_client=http_client,
        result_store=result_store,
    )
    return service.app


if __name__ == "__main__":
    service = InstitutionsService(config=get_config("institutions", 8020))
    service.run()
