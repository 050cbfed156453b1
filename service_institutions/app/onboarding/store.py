"""
Time-bounded store correlating callback-pushed and poll-pulled onboarding results.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from shared.config import DEFAULT_RESULT_TTL
from shared.logging import get_logger
from .models import OnboardingResult


class ResultStore:
    """In-memory onboarding results keyed by user, session or ``user:institution``.

    Entries expire ``ttl_seconds`` after they were written; reads never extend
    that. Expired entries are swept on every access.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_RESULT_TTL, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._results: Dict[str, OnboardingResult] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("institutions.onboarding.store")

    def _sweep(self):
        """Drop expired entries. Caller holds the lock."""
        now = self._clock()
        expired = [key for key, result in self._results.items()
                   if result.expires_at is not None and result.expires_at < now]
        for key in expired:
            del self._results[key]
            self.logger.debug("Expired onboarding result removed", key=key)

    def put(self, key: str, result: OnboardingResult) -> OnboardingResult:
        now = self._clock()
        stamped = result.model_copy(update={
            "received_at": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
            "expires_at": now + self.ttl_seconds,
        })
        with self._lock:
            self._sweep()
            self._results[key] = stamped
        self.logger.info("Stored onboarding result", key=key, status=result.status)
        return stamped

    def get(self, key: str) -> Optional[OnboardingResult]:
        with self._lock:
            self._sweep()
            return self._results.get(key)

    def find_by_user(self, stable_user_id: str, institution_id: Optional[str] = None) -> Optional[OnboardingResult]:
        """Look a user's result up by direct key, then composite key, then by scanning."""
        with self._lock:
            self._sweep()

            direct = self._results.get(stable_user_id)
            if direct and (not institution_id or direct.institution_id == institution_id):
                return direct

            if institution_id:
                composite = self._results.get(f"{stable_user_id}:{institution_id}")
                if composite:
                    return composite

            for result in self._results.values():
                if result.stable_user_id != stable_user_id:
                    continue
                if not institution_id or result.institution_id == institution_id:
                    return result

        return None

    def clear(self, key: str) -> bool:
        with self._lock:
            return self._results.pop(key, None) is not None

    def clear_for_user(self, stable_user_id: str) -> int:
        with self._lock:
            keys = [key for key, result in self._results.items()
                    if key == stable_user_id or result.stable_user_id == stable_user_id]
            for key in keys:
                del self._results[key]
        return len(keys)

    def clear_all(self):
        with self._lock:
            self._results.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._sweep()
            return {"count": len(self._results), "keys": list(self._results.keys())}

    def __len__(self) -> int:
        with self._lock:
            self._sweep()
            return len(self._results)
