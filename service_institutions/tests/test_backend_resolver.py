"""
Unit tests for institutional backend resolution.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from service_institutions.app.errors import RegistryUnavailableError
from service_institutions.app.registry.domains import (
    base_domain,
    clean_backend_url,
    normalize_backend_base_url,
    normalize_organization_domain,
)
from service_institutions.app.registry.resolver import BackendResolver
from shared.metrics import MetricsCollector


class TestBackendResolver:
    """Test cases for BackendResolver."""

    @pytest.fixture
    def registry(self):
        """Mock on-chain registry."""
        registry = MagicMock()
        registry.get_backend = AsyncMock(return_value="https://ib.uned.es/auth/")
        return registry

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("institutions")

    @pytest.fixture
    def resolver(self, registry, metrics):
        """Create BackendResolver instance."""
        return BackendResolver(registry, metrics=metrics)

    @pytest.mark.asyncio
    async def test_resolve_normalizes_url(self, resolver, registry):
        """Test the registry value is trimmed of slashes and /auth."""
        backend_url = await resolver.resolve("UNED.es")

        assert backend_url == "https://ib.uned.es"
        registry.get_backend.assert_awaited_once_with("uned.es")

    @pytest.mark.asyncio
    async def test_resolve_caches_until_cleared(self, resolver, registry, metrics):
        """Test repeated resolutions hit the cache until clear()."""
        first = await resolver.resolve("uned.es")
        second = await resolver.resolve("uned.es")

        assert first == second
        assert registry.get_backend.await_count == 1
        assert metrics.sample_value("backend_resolutions_total", outcome="cache_hit") == 1.0

        resolver.clear()
        await resolver.resolve("uned.es")

        assert registry.get_backend.await_count == 2

    @pytest.mark.asyncio
    async def test_cache_ignores_rotated_backend(self, resolver, registry):
        """Test a backend changed on-chain is not seen until the cache is cleared."""
        await resolver.resolve("uned.es")
        registry.get_backend.return_value = "https://new-ib.uned.es"

        assert await resolver.resolve("uned.es") == "https://ib.uned.es"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("institution_id", [None, ""])
    async def test_empty_id_makes_no_registry_call(self, resolver, registry, institution_id):
        """Test empty identifiers resolve to None without touching the registry."""
        assert await resolver.resolve(institution_id) is None
        registry.get_backend.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_id_makes_no_registry_call(self, resolver, registry):
        assert await resolver.resolve("not a domain!") is None
        registry.get_backend.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_base_domain(self, resolver, registry):
        """Test a subdomain without a backend falls back to its parent domain."""
        registry.get_backend.side_effect = [None, "https://ib.uned.es"]

        backend_url = await resolver.resolve("mail.uned.es")

        assert backend_url == "https://ib.uned.es"
        assert [call.args[0] for call in registry.get_backend.await_args_list] == ["mail.uned.es", "uned.es"]

        # Base domain is cached too
        assert await resolver.resolve("uned.es") == "https://ib.uned.es"
        assert registry.get_backend.await_count == 2

    @pytest.mark.asyncio
    async def test_not_found_is_not_cached(self, resolver, registry):
        registry.get_backend.return_value = ""

        assert await resolver.resolve("uned.es") is None
        assert await resolver.resolve("uned.es") is None
        assert registry.get_backend.await_count == 2
        assert resolver.cache_size == 0

    @pytest.mark.asyncio
    async def test_registry_failure_propagates(self, resolver, registry):
        registry.get_backend.side_effect = RegistryUnavailableError("RPC down")

        with pytest.raises(RegistryUnavailableError):
            await resolver.resolve("uned.es")

    @pytest.mark.asyncio
    async def test_without_registry_nothing_resolves(self):
        resolver = BackendResolver(None)

        assert await resolver.resolve("uned.es") is None
        assert await resolver.has_backend("uned.es") is False

    @pytest.mark.asyncio
    async def test_read_backend_bypasses_cache(self, resolver, registry):
        await resolver.resolve("uned.es")

        assert await resolver.read_backend("uned.es") == "https://ib.uned.es"
        assert registry.get_backend.await_count == 2


class TestDomainNormalization:
    """Test cases for identifier and URL normalization."""

    def test_normalize_organization_domain(self):
        assert normalize_organization_domain("  UNED.ES ") == "uned.es"
        assert normalize_organization_domain("ab") is None
        assert normalize_organization_domain("uned_es") is None
        assert normalize_organization_domain("a" * 256) is None
        assert normalize_organization_domain(None) is None

    def test_base_domain(self):
        assert base_domain("mail.uned.es") == "uned.es"
        assert base_domain("uned.es") is None

    def test_clean_backend_url(self):
        assert clean_backend_url(" https://ib.uned.es/auth/ ") == "https://ib.uned.es"
        assert clean_backend_url("https://ib.uned.es//") == "https://ib.uned.es"
        assert clean_backend_url("") is None

    def test_normalize_backend_base_url(self):
        assert normalize_backend_base_url("https://ib.uned.es/") == "https://ib.uned.es"
        assert normalize_backend_base_url("ftp://ib.uned.es") is None
        assert normalize_backend_base_url("http://a.b") is None
