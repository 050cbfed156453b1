"""
Consumption of the authenticated SSO session.

The SAML/SSO login itself happens upstream; whatever authenticates the
browser puts the resulting session on ``request.state.session`` and the
routes read it through the ``get_sso_session`` dependency.
"""

from typing import Any, Mapping, Optional

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .onboarding.models import UserData

STAFF_ROLE_MARKERS = ("staff",)


class SSOSession(BaseModel):
    """Attributes released by the institution's identity provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    is_sso: bool = Field(default=False, alias="isSSO")
    id: Optional[str] = None
    uid: Optional[str] = None
    email: Optional[str] = None
    mail: Optional[str] = None
    name: Optional[str] = None
    display_name: Optional[str] = None
    affiliation: Optional[str] = None
    schac_home_organization: Optional[str] = None
    organization_name: Optional[str] = None
    institution_name: Optional[str] = None
    role: Optional[str] = None
    edu_person_affiliation: Optional[str] = None
    scoped_role: Optional[str] = None
    edu_person_scoped_affiliation: Optional[str] = None
    edu_person_principal_name: Optional[str] = None
    personal_unique_code: Optional[str] = None
    schac_personal_unique_code: Optional[str] = None
    saml_assertion: Optional[str] = None

    @property
    def is_federated(self) -> bool:
        """A session that came out of a SAML login."""
        return self.is_sso or bool(self.saml_assertion)

    @property
    def home_organization(self) -> Optional[str]:
        return self.affiliation or self.schac_home_organization

    @property
    def effective_role(self) -> Optional[str]:
        return self.role or self.edu_person_affiliation

    @property
    def effective_scoped_role(self) -> Optional[str]:
        return self.scoped_role or self.edu_person_scoped_affiliation

    @property
    def contact_email(self) -> Optional[str]:
        return self.email or self.mail

    @property
    def display(self) -> Optional[str]:
        return self.name or self.display_name

    def to_user_data(self) -> UserData:
        return UserData(
            id=self.id or self.uid,
            email=self.contact_email,
            name=self.display,
            affiliation=self.home_organization,
            role=self.effective_role,
            scoped_role=self.effective_scoped_role,
            personal_unique_code=self.personal_unique_code,
            schac_personal_unique_code=self.schac_personal_unique_code,
            edu_person_principal_name=self.edu_person_principal_name,
            saml_assertion=self.saml_assertion,
        )


def has_staff_role(role: Optional[str], scoped_role: Optional[str]) -> bool:
    """Institutional staff per eduPersonAffiliation / eduPersonScopedAffiliation."""
    for value in (role, scoped_role):
        if not value:
            continue
        lowered = value.lower()
        if any(marker in lowered for marker in STAFF_ROLE_MARKERS):
            return True
    return False


def coerce_session(value: Any) -> Optional[SSOSession]:
    if value is None:
        return None
    if isinstance(value, SSOSession):
        return value
    if isinstance(value, Mapping):
        return SSOSession.model_validate(dict(value))
    return None


async def get_sso_session(request: Request) -> Optional[SSOSession]:
    """FastAPI dependency returning the upstream SSO session, if any."""
    return coerce_session(getattr(request.state, "session", None))
