"""
Institutional backend resolution with an in-process cache.
"""

import threading
from typing import Dict, Optional, Protocol

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .domains import base_domain, clean_backend_url, normalize_organization_domain


class BackendRegistry(Protocol):
    async def get_backend(self, organization: str) -> Optional[str]:
        ...


class BackendResolver:
    """Resolves an institution identifier to its backend base URL.

    Successful resolutions are cached for the lifetime of the resolver under
    the identifier as given, its normalized form and, when the match came
    from the parent domain, the base domain. The cache is only emptied by
    clear(); a backend rotated on-chain is not seen until then. Without a
    registry every institution resolves to None.
    """

    def __init__(self, registry: Optional[BackendRegistry], metrics: Optional[MetricsCollector] = None):
        self._registry = registry
        self._metrics = metrics
        self._cache: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("institutions.resolver")

    def _record(self, outcome: str):
        if self._metrics:
            self._metrics.increment_counter("backend_resolutions_total", outcome=outcome)

    def _cached(self, *keys: str) -> Optional[str]:
        with self._lock:
            for key in keys:
                if key in self._cache:
                    return self._cache[key]
        return None

    async def _read(self, domain: str) -> Optional[str]:
        if self._registry is None:
            return None
        return clean_backend_url(await self._registry.get_backend(domain))

    async def resolve(self, institution_id: Optional[str]) -> Optional[str]:
        """Backend URL for an institution, None when none is registered.

        Raises RegistryUnavailableError when the registry cannot be read.
        """
        if not institution_id:
            self.logger.warning("No institution id provided")
            return None

        cached = self._cached(institution_id)
        if cached:
            self._record("cache_hit")
            return cached

        normalized = normalize_organization_domain(institution_id)
        if not normalized:
            self.logger.warning("Invalid institution id", institution_id=institution_id)
            self._record("invalid")
            return None

        cached = self._cached(normalized)
        if cached:
            with self._lock:
                self._cache[institution_id] = cached
            self._record("cache_hit")
            return cached

        backend_url = await self._read(normalized)

        fallback = None
        if not backend_url:
            fallback = base_domain(normalized)
            if fallback:
                backend_url = await self._read(fallback)

        if not backend_url:
            self.logger.warning("No backend configured for institution", institution_id=institution_id)
            self._record("not_found")
            return None

        with self._lock:
            self._cache[institution_id] = backend_url
            self._cache[normalized] = backend_url
            if fallback:
                self._cache[fallback] = backend_url

        self.logger.info("Resolved institutional backend", institution_id=institution_id, backend_url=backend_url)
        self._record("resolved")
        return backend_url

    async def read_backend(self, organization: str) -> Optional[str]:
        """Uncached read of the exact organization's registered backend."""
        normalized = normalize_organization_domain(organization)
        if not normalized:
            return None
        return await self._read(normalized)

    async def has_backend(self, institution_id: Optional[str]) -> bool:
        return await self.resolve(institution_id) is not None

    def clear(self):
        with self._lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)
