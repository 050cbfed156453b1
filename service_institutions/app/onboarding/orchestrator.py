"""
Orchestration of the WebAuthn onboarding ceremony hosted by institutional backends.

Flow:
1. The marketplace POSTs the user's federated identity to the institutional
   backend's ``/onboarding/webauthn/options`` and gets a session back.
2. The browser is sent to the ceremony URL, hosted by the institutional backend.
3. The outcome reaches the marketplace either as a callback or through
   status polling; both paths meet in the ResultStore.
"""

import asyncio
import json
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import quote

import httpx

from shared.config import BaseConfig
from shared.errors import ConfigurationError, ValidationError
from shared.logging import get_logger, set_onboarding_context
from shared.metrics import MetricsCollector
from ..errors import (
    BackendUnreachableError,
    InvalidResponseError,
    MissingUserDataError,
    NoBackendError,
    PollingCancelledError,
    RegistryUnavailableError,
)
from ..registry.resolver import BackendResolver
from ..tokens.provisioning import assertion_reference
from .models import (
    SUCCESS_STATUSES,
    FAILURE_STATUSES,
    OnboardingResult,
    OnboardingSession,
    OnboardingStatus,
    StatusReport,
    UserData,
    UserOnboardingStatus,
)

SP_API_KEY_HEADER = "X-SP-Api-Key"

UserDataLike = Union[UserData, Mapping[str, Any], None]


def extract_stable_user_id(user: Optional[UserData]) -> Optional[str]:
    """Stable identifier for a federated user.

    Priority: personal unique code, then eduPersonPrincipalName, then
    ``id@affiliation``, then email. The scoped affiliation is shared by
    everyone with the same role at an institution and never identifies a user.
    """
    if user is None:
        return None
    for candidate in (
        user.personal_unique_code,
        user.schac_personal_unique_code,
        user.edu_person_principal_name,
    ):
        if candidate:
            return candidate
    if user.id and user.affiliation:
        return f"{user.id}@{user.affiliation}"
    return user.email or None


def _coerce_user(user_data: UserDataLike) -> Optional[UserData]:
    if user_data is None:
        return None
    if isinstance(user_data, UserData):
        return user_data
    return UserData.model_validate(dict(user_data))


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


class OnboardingOrchestrator:
    """Drives onboarding sessions against institutional backends."""

    def __init__(
        self,
        resolver: BackendResolver,
        http_client: httpx.AsyncClient,
        sp_api_key: Optional[str] = None,
        require_sp_api_key: bool = False,
        poll_interval_seconds: float = 2.0,
        poll_timeout_seconds: float = 120.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.resolver = resolver
        self.http_client = http_client
        self.sp_api_key = sp_api_key
        self.require_sp_api_key = require_sp_api_key
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_timeout_seconds = poll_timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("institutions.onboarding")

    @classmethod
    def from_config(cls, config: BaseConfig, resolver: BackendResolver, http_client: httpx.AsyncClient,
                    metrics: Optional[MetricsCollector] = None) -> "OnboardingOrchestrator":
        return cls(
            resolver,
            http_client,
            sp_api_key=config.sp_api_key,
            require_sp_api_key=config.require_sp_api_key,
            poll_interval_seconds=config.onboarding_poll_interval_seconds,
            poll_timeout_seconds=config.onboarding_poll_timeout_seconds,
            metrics=metrics,
        )

    def _sp_headers(self) -> Dict[str, str]:
        if not self.sp_api_key:
            if self.require_sp_api_key:
                raise ConfigurationError(
                    "Missing SP API key for institutional backend (BRIDGE_SP_API_KEY)",
                    code="SP_API_KEY_UNAVAILABLE",
                )
            return {}
        return {SP_API_KEY_HEADER: self.sp_api_key}

    def _record(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("onboarding_sessions_total", outcome=outcome)

    def build_session_payload(self, user_data: UserDataLike, callback_url: str,
                              include_assertion: bool = False) -> Dict[str, Any]:
        """Request body for the backend's options endpoint.

        Without ``include_assertion`` only the assertion digest is sent, which
        is the shape handed to the browser for browser-direct onboarding.
        """
        user = _coerce_user(user_data)
        if user is None:
            raise MissingUserDataError()
        if not user.affiliation:
            raise MissingUserDataError("Missing institution affiliation")

        stable_user_id = extract_stable_user_id(user)
        if not stable_user_id:
            raise MissingUserDataError("Cannot determine stable user ID")

        attributes = {"email": user.email, "role": user.role, "scopedRole": user.scoped_role}
        payload: Dict[str, Any] = {
            "stableUserId": stable_user_id,
            "institutionId": user.affiliation,
            "displayName": user.name or user.email or stable_user_id,
            "attributes": json.dumps({k: v for k, v in attributes.items() if v is not None},
                                     separators=(",", ":")),
            "callbackUrl": callback_url,
        }

        if user.saml_assertion:
            if include_assertion:
                payload["samlAssertion"] = user.saml_assertion
            payload["assertionReference"] = assertion_reference(user.saml_assertion)

        return payload

    async def initiate(self, user_data: UserDataLike, callback_url: str) -> OnboardingSession:
        """Open an onboarding session with the user's institutional backend."""
        user = _coerce_user(user_data)
        payload = self.build_session_payload(user, callback_url, include_assertion=True)
        stable_user_id = payload["stableUserId"]
        institution_id = payload["institutionId"]
        set_onboarding_context(stable_user_id, institution_id)

        headers = self._sp_headers()

        backend_url = await self.resolver.resolve(institution_id)
        if not backend_url:
            self._record("no_backend")
            raise NoBackendError(institution_id)

        self.logger.info("Initiating onboarding", backend_url=backend_url)

        try:
            response = await self.http_client.post(
                f"{backend_url}/onboarding/webauthn/options",
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.logger.error("Institutional backend unreachable", error=str(e))
            self._record("unreachable")
            raise BackendUnreachableError(f"Could not reach institutional backend: {e}") from e

        if not response.is_success:
            self.logger.error("Institutional backend error", status=response.status_code, body=response.text)
            self._record("backend_error")
            raise BackendUnreachableError(
                f"Institutional backend returned {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            self._record("invalid_response")
            raise InvalidResponseError("Institutional backend returned invalid JSON")

        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id:
            self._record("invalid_response")
            raise InvalidResponseError("Missing sessionId in response")

        session = OnboardingSession(
            session_id=str(session_id),
            stable_user_id=stable_user_id,
            institution_id=institution_id,
            backend_url=backend_url,
            ceremony_url=data.get("ceremonyUrl") or f"{backend_url}/onboarding/webauthn/ceremony/{session_id}",
            expires_at=data.get("expiresAt"),
            options=data.get("options") if isinstance(data.get("options"), dict) else None,
        )

        self.logger.info("Onboarding session created", session_id=session.session_id)
        self._record("initiated")
        return session

    async def poll_status(self, session_id: str, backend_url: str) -> StatusReport:
        """Single status check; a 404 means the backend forgot the session."""
        if not session_id or not backend_url:
            raise ValidationError("Missing sessionId or backendUrl")

        headers = self._sp_headers()
        try:
            response = await self.http_client.get(
                f"{backend_url}/onboarding/webauthn/status/{quote(session_id, safe='')}",
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise BackendUnreachableError(f"Status check failed: {e}") from e

        if response.status_code == 404:
            return StatusReport(session_id=session_id, status=OnboardingStatus.EXPIRED.value)

        if not response.is_success:
            raise BackendUnreachableError(
                f"Status check failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            raise InvalidResponseError("Institutional backend returned invalid JSON")
        if not isinstance(data, dict):
            raise InvalidResponseError("Unexpected status payload")

        return StatusReport(
            session_id=session_id,
            status=_text(data.get("status")) or OnboardingStatus.PENDING.value,
            stable_user_id=_text(data.get("stableUserId")),
            institution_id=_text(data.get("institutionId")),
            credential_id=_text(data.get("credentialId")),
            public_key=_text(data.get("publicKey") or data.get("publicKeyCose") or data.get("cosePublicKey")),
            rp_id=_text(data.get("rpId")),
            aaguid=_text(data.get("aaguid")),
            error=_text(data.get("error")),
            timestamp=_text(data.get("timestamp")),
        )

    async def poll_until_terminal(
        self,
        session_id: str,
        backend_url: str,
        interval_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StatusReport:
        """Poll until a terminal status or the timeout.

        Transport failures are retried on the next tick. Setting
        ``cancel_event`` stops the loop, including mid-wait, with
        PollingCancelledError. The timeout yields an EXPIRED report.
        """
        interval = interval_seconds if interval_seconds is not None else self.poll_interval_seconds
        timeout = timeout_seconds if timeout_seconds is not None else self.poll_timeout_seconds

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            if cancel_event is not None and cancel_event.is_set():
                raise PollingCancelledError(session_id=session_id)

            try:
                report = await self.poll_status(session_id, backend_url)
            except (BackendUnreachableError, InvalidResponseError) as e:
                self.logger.warning("Status poll failed, retrying", session_id=session_id, error=e.message)
                report = None

            if report is not None:
                if report.status in SUCCESS_STATUSES:
                    return report.model_copy(update={"success": True})
                if report.status in FAILURE_STATUSES:
                    return report.model_copy(update={"success": False})

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if await self._wait(min(interval, remaining), cancel_event):
                raise PollingCancelledError(session_id=session_id)

        return StatusReport(
            session_id=session_id,
            status=OnboardingStatus.EXPIRED.value,
            success=False,
            error="Polling timeout exceeded",
        )

    @staticmethod
    async def _wait(seconds: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``seconds``; True when the cancel event fired meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def check_user_status(self, user_data: UserDataLike) -> UserOnboardingStatus:
        """Ask the institutional backend whether the user already holds a credential."""
        user = _coerce_user(user_data)
        if user is None:
            return UserOnboardingStatus(error="No user data")

        institution_id = user.affiliation
        headers = self._sp_headers()

        try:
            backend_url = await self.resolver.resolve(institution_id)
        except RegistryUnavailableError as e:
            return UserOnboardingStatus(institution_id=institution_id, error=e.message)

        if not backend_url:
            return UserOnboardingStatus(institution_id=institution_id, error="NO_BACKEND_CONFIGURED")

        stable_user_id = extract_stable_user_id(user)
        if not stable_user_id:
            return UserOnboardingStatus(institution_id=institution_id, error="MISSING_USER_DATA")

        base = UserOnboardingStatus(
            stable_user_id=stable_user_id,
            institution_id=institution_id,
            backend_url=backend_url,
        )

        try:
            response = await self.http_client.get(
                f"{backend_url}/onboarding/webauthn/key-status/{quote(stable_user_id, safe='')}",
                params={"institutionId": institution_id},
                headers=headers,
            )
        except httpx.HTTPError as e:
            self.logger.warning("User status check failed", error=str(e))
            return base.model_copy(update={"error": str(e)})

        if response.status_code == 404:
            return base

        if not response.is_success:
            self.logger.warning("User status check returned error", status=response.status_code)
            return base.model_copy(update={"error": f"Status check returned {response.status_code}"})

        try:
            data = response.json()
        except ValueError:
            return base.model_copy(update={"error": "Invalid key-status response"})
        if not isinstance(data, dict):
            return base.model_copy(update={"error": "Invalid key-status response"})

        return base.model_copy(update={
            "is_onboarded": any(data.get(flag) is True for flag in ("hasCredential", "registered", "isOnboarded")),
            "credential_id": _text(data.get("credentialId")),
            "registered_at": _text(data.get("lastRegistered") or data.get("registeredAt")),
        })

    @staticmethod
    def to_result(report: StatusReport, stable_user_id: Optional[str] = None,
                  institution_id: Optional[str] = None) -> OnboardingResult:
        """Normalize a status report into the stored result shape."""
        return OnboardingResult(
            status=report.status,
            success=report.status in SUCCESS_STATUSES,
            stable_user_id=report.stable_user_id or stable_user_id,
            institution_id=report.institution_id or institution_id,
            session_id=report.session_id,
            credential_id=report.credential_id,
            public_key=report.public_key,
            aaguid=report.aaguid,
            error=report.error,
            timestamp=report.timestamp,
        )


def result_from_callback(body: Mapping[str, Any], received_at: Optional[str] = None) -> OnboardingResult:
    """Normalize a callback body from an institutional backend."""
    status = _text(body.get("status"))
    if not status:
        raise ValidationError("Missing required field: status", code="MISSING_STATUS")
    return OnboardingResult(
        status=status,
        success=status in SUCCESS_STATUSES,
        stable_user_id=_text(body.get("stableUserId")),
        institution_id=_text(body.get("institutionId")),
        session_id=_text(body.get("sessionId")),
        credential_id=_text(body.get("credentialId")),
        public_key=_text(body.get("publicKey")),
        aaguid=_text(body.get("aaguid")),
        error=_text(body.get("error")),
        timestamp=_text(body.get("timestamp")) or received_at,
    )
