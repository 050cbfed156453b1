"""
Unit tests for the on-chain institution registry client.
"""

import pytest
from unittest.mock import MagicMock
from web3.exceptions import ContractLogicError

from service_institutions.app.errors import RegistryTransactionError, RegistryUnavailableError
from service_institutions.app.registry import InstitutionRegistry
from shared.errors import ConfigurationError
from shared.test_helpers import TEST_WALLET, TestEnvironment

REGISTRY_ADDRESS = "0x" + "12" * 20
TX_HASH = b"\x34" * 32


@pytest.fixture
def registry():
    """Registry client with the contract and chain mocked out."""
    registry = InstitutionRegistry("http://localhost:8545", REGISTRY_ADDRESS)
    registry._contract = MagicMock()
    registry._w3 = MagicMock()
    return registry


@pytest.fixture
def signing_registry(registry):
    account = MagicMock()
    account.address = TEST_WALLET
    account.sign_transaction.return_value.raw_transaction = b"raw"
    registry._account = account
    registry._w3.eth.get_transaction_count.return_value = 7
    registry._w3.eth.send_raw_transaction.return_value = TX_HASH
    registry._w3.eth.wait_for_transaction_receipt.return_value = {"status": 1}
    return registry


class TestRegistryReads:
    """Test cases for registry reads."""

    @pytest.mark.asyncio
    async def test_get_backend(self, registry):
        registry._contract.functions.getSchacHomeOrganizationBackend.return_value.call.return_value = "https://ib.uned.es"

        assert await registry.get_backend("uned.es") == "https://ib.uned.es"
        registry._contract.functions.getSchacHomeOrganizationBackend.assert_called_once_with("uned.es")

    @pytest.mark.asyncio
    async def test_get_backend_blank_is_none(self, registry):
        registry._contract.functions.getSchacHomeOrganizationBackend.return_value.call.return_value = "  "

        assert await registry.get_backend("uned.es") is None

    @pytest.mark.asyncio
    async def test_get_backend_revert_is_none(self, registry):
        call = registry._contract.functions.getSchacHomeOrganizationBackend.return_value.call
        call.side_effect = ContractLogicError("execution reverted")

        assert await registry.get_backend("uned.es") is None

    @pytest.mark.asyncio
    async def test_get_backend_transport_failure(self, registry):
        call = registry._contract.functions.getSchacHomeOrganizationBackend.return_value.call
        call.side_effect = ConnectionError("RPC down")

        with pytest.raises(RegistryUnavailableError):
            await registry.get_backend("uned.es")

    @pytest.mark.asyncio
    async def test_resolve_organization_zero_address(self, registry):
        call = registry._contract.functions.resolveSchacHomeOrganization.return_value.call
        call.return_value = "0x" + "0" * 40

        assert await registry.resolve_organization("uned.es") is None

        call.return_value = TEST_WALLET
        assert await registry.resolve_organization("uned.es") == TEST_WALLET

    @pytest.mark.asyncio
    async def test_is_provider(self, registry):
        registry._contract.functions.isLabProvider.return_value.call.return_value = True

        assert await registry.is_provider(TEST_WALLET) is True


class TestRegistryWrites:
    """Test cases for registry transactions."""

    @pytest.mark.asyncio
    async def test_write_requires_signer(self, registry):
        with pytest.raises(ConfigurationError):
            await registry.grant_institution_role(TEST_WALLET, "uned.es")

    @pytest.mark.asyncio
    async def test_grant_institution_role(self, signing_registry):
        tx_hash = await signing_registry.grant_institution_role(TEST_WALLET, "uned.es")

        assert tx_hash == "0x" + "34" * 32
        function = signing_registry._contract.functions.grantInstitutionRole.return_value
        function.build_transaction.assert_called_once_with({"from": TEST_WALLET, "nonce": 7})
        signing_registry._w3.eth.send_raw_transaction.assert_called_once_with(b"raw")

    @pytest.mark.asyncio
    async def test_failed_receipt(self, signing_registry):
        signing_registry._w3.eth.wait_for_transaction_receipt.return_value = {"status": 0}

        with pytest.raises(RegistryTransactionError):
            await signing_registry.set_backend(TEST_WALLET, "uned.es", "https://ib.uned.es")

    @pytest.mark.asyncio
    async def test_revert_reason_preserved(self, signing_registry):
        function = signing_registry._contract.functions.addProvider.return_value
        function.build_transaction.side_effect = ContractLogicError("execution reverted: Provider already exists")

        with pytest.raises(RegistryTransactionError) as exc_info:
            await signing_registry.add_provider("UNED", TEST_WALLET, "labs@uned.es", "ES", "https://ib.uned.es/auth")

        assert "already exists" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_node_failure(self, signing_registry):
        signing_registry._w3.eth.get_transaction_count.side_effect = ConnectionError("RPC down")

        with pytest.raises(RegistryUnavailableError):
            await signing_registry.grant_institution_role(TEST_WALLET, "uned.es")


class TestRegistryConfig:
    """Test cases for registry construction."""

    def test_from_config_requires_rpc_and_address(self):
        with pytest.raises(ConfigurationError):
            InstitutionRegistry.from_config(TestEnvironment.get_service_config())

    def test_from_config_with_signer(self):
        config = TestEnvironment.get_service_config(
            rpc_url="http://localhost:8545",
            registry_address=REGISTRY_ADDRESS,
            registry_signer_key="0x" + "11" * 32,
        )

        registry = InstitutionRegistry.from_config(config)

        assert registry.signer_address is not None
        assert registry.signer_address.startswith("0x")
