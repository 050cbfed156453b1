"""
Onboarding data models.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class OnboardingStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


SUCCESS_STATUSES = frozenset({OnboardingStatus.COMPLETED.value, OnboardingStatus.SUCCESS.value})
FAILURE_STATUSES = frozenset({OnboardingStatus.FAILED.value, OnboardingStatus.EXPIRED.value})
TERMINAL_STATUSES = SUCCESS_STATUSES | FAILURE_STATUSES


class CamelModel(BaseModel):
    """Models serialized with the camelCase keys institutional backends use."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class UserData(CamelModel):
    """Federated attributes of an SSO user, as consumed by onboarding."""

    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    affiliation: Optional[str] = None
    role: Optional[str] = None
    scoped_role: Optional[str] = None
    personal_unique_code: Optional[str] = None
    schac_personal_unique_code: Optional[str] = None
    edu_person_principal_name: Optional[str] = None
    saml_assertion: Optional[str] = None


class OnboardingSession(CamelModel):
    session_id: str
    stable_user_id: str
    institution_id: str
    backend_url: str
    ceremony_url: str
    expires_at: Optional[Any] = None
    options: Optional[Dict[str, Any]] = None


class StatusReport(CamelModel):
    """One status answer from an institutional backend."""

    session_id: str
    status: str = OnboardingStatus.PENDING.value
    stable_user_id: Optional[str] = None
    institution_id: Optional[str] = None
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    rp_id: Optional[str] = None
    aaguid: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None
    success: Optional[bool] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class OnboardingResult(CamelModel):
    """Outcome of a ceremony, as pushed by callback or pulled by polling."""

    status: str
    success: bool = False
    stable_user_id: Optional[str] = None
    institution_id: Optional[str] = None
    session_id: Optional[str] = None
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    aaguid: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[str] = None
    received_at: Optional[str] = None
    expires_at: Optional[float] = None


class UserOnboardingStatus(CamelModel):
    is_onboarded: bool = False
    stable_user_id: Optional[str] = None
    institution_id: Optional[str] = None
    backend_url: Optional[str] = None
    credential_id: Optional[str] = None
    registered_at: Optional[str] = None
    error: Optional[str] = None
