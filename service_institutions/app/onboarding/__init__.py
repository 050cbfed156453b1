"""
Onboarding package.

- orchestrator: session creation, status polling and result normalization
  against institutional backends.
- store: TTL-bounded correlation of callback and polling results.
- models: pydantic models shared by both (camelCase on the wire).
"""

from .models import OnboardingResult, OnboardingSession, OnboardingStatus, StatusReport, UserData
from .orchestrator import OnboardingOrchestrator, extract_stable_user_id, result_from_callback
from .store import ResultStore

__all__ = [
    "OnboardingResult",
    "OnboardingSession",
    "OnboardingStatus",
    "StatusReport",
    "UserData",
    "OnboardingOrchestrator",
    "extract_stable_user_id",
    "result_from_callback",
    "ResultStore",
]
