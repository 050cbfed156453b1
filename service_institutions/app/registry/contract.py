"""
web3.py client for the on-chain institution registry.

Only the handful of registry functions the bridge needs are declared in the
ABI. Every call is blocking in web3.py, so each one is moved off the event
loop with ``asyncio.to_thread``.
"""

import asyncio
from typing import Any, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from shared.config import BaseConfig
from shared.errors import ConfigurationError
from shared.logging import get_logger
from ..errors import RegistryTransactionError, RegistryUnavailableError

ZERO_ADDRESS = "0x" + "0" * 40

_STRING = {"internalType": "string", "type": "string"}
_ADDRESS = {"internalType": "address", "type": "address"}

REGISTRY_ABI = [
    {
        "inputs": [dict(_STRING, name="schacHomeOrganization")],
        "name": "getSchacHomeOrganizationBackend",
        "outputs": [dict(_STRING, name="")],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [dict(_STRING, name="schacHomeOrganization")],
        "name": "resolveSchacHomeOrganization",
        "outputs": [dict(_ADDRESS, name="")],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [dict(_ADDRESS, name="account")],
        "name": "isLabProvider",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [dict(_ADDRESS, name="institution"), dict(_STRING, name="schacHomeOrganization")],
        "name": "grantInstitutionRole",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            dict(_ADDRESS, name="institution"),
            dict(_STRING, name="schacHomeOrganization"),
            dict(_STRING, name="backendUrl"),
        ],
        "name": "adminSetSchacHomeOrganizationBackend",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            dict(_STRING, name="name"),
            dict(_ADDRESS, name="account"),
            dict(_STRING, name="email"),
            dict(_STRING, name="country"),
            dict(_STRING, name="authURI"),
        ],
        "name": "addProvider",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class InstitutionRegistry:
    """Reads and writes institution records on the registry contract."""

    def __init__(self, rpc_url: str, address: str, signer_key: Optional[str] = None,
                 request_timeout: int = 30, receipt_timeout: int = 180):
        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._contract = self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=REGISTRY_ABI)
        self._account = self._w3.eth.account.from_key(signer_key) if signer_key else None
        self.receipt_timeout = receipt_timeout
        self.logger = get_logger("institutions.registry")

    @classmethod
    def from_config(cls, config: BaseConfig) -> "InstitutionRegistry":
        if not config.rpc_url or not config.registry_address:
            raise ConfigurationError(
                "Institution registry is not configured (set BRIDGE_RPC_URL and BRIDGE_REGISTRY_ADDRESS)",
                code="REGISTRY_NOT_CONFIGURED",
            )
        return cls(config.rpc_url, config.registry_address, config.registry_signer_key)

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    # Reads

    async def _call(self, function) -> Any:
        return await asyncio.to_thread(function.call)

    async def get_backend(self, organization: str) -> Optional[str]:
        """Registered backend URL for an organization, None when unset."""
        try:
            value = await self._call(self._contract.functions.getSchacHomeOrganizationBackend(organization))
        except ContractLogicError as e:
            self.logger.info("Backend lookup reverted", organization=organization, error=str(e))
            return None
        except Exception as e:
            self.logger.error("Backend lookup failed", organization=organization, error=str(e))
            raise RegistryUnavailableError(f"Backend lookup failed: {e}") from e
        return value if isinstance(value, str) and value.strip() else None

    async def resolve_organization(self, organization: str) -> Optional[str]:
        """Wallet an organization is registered to, None when unregistered."""
        try:
            wallet = await self._call(self._contract.functions.resolveSchacHomeOrganization(organization))
        except ContractLogicError:
            return None
        except Exception as e:
            self.logger.error("Organization lookup failed", organization=organization, error=str(e))
            raise RegistryUnavailableError(f"Organization lookup failed: {e}") from e
        if not wallet or wallet.lower() == ZERO_ADDRESS:
            return None
        return wallet

    async def is_provider(self, wallet: str) -> bool:
        try:
            return bool(await self._call(
                self._contract.functions.isLabProvider(Web3.to_checksum_address(wallet))
            ))
        except ContractLogicError:
            return False
        except Exception as e:
            self.logger.error("Provider lookup failed", wallet=wallet, error=str(e))
            raise RegistryUnavailableError(f"Provider lookup failed: {e}") from e

    # Writes

    async def grant_institution_role(self, wallet: str, organization: str) -> str:
        return await self._transact(
            "grantInstitutionRole",
            self._contract.functions.grantInstitutionRole(Web3.to_checksum_address(wallet), organization),
        )

    async def set_backend(self, wallet: str, organization: str, backend_url: str) -> str:
        return await self._transact(
            "adminSetSchacHomeOrganizationBackend",
            self._contract.functions.adminSetSchacHomeOrganizationBackend(
                Web3.to_checksum_address(wallet), organization, backend_url
            ),
        )

    async def add_provider(self, name: str, wallet: str, email: str, country: str, auth_uri: str) -> str:
        return await self._transact(
            "addProvider",
            self._contract.functions.addProvider(
                name, Web3.to_checksum_address(wallet), email, country, auth_uri
            ),
        )

    async def _transact(self, name: str, function) -> str:
        """Sign, send and wait for a registry transaction; return its hash."""
        if self._account is None:
            raise ConfigurationError(
                "Registry signer key is not configured (set BRIDGE_REGISTRY_SIGNER_KEY)",
                code="REGISTRY_SIGNER_UNAVAILABLE",
            )
        account = self._account

        def send() -> str:
            nonce = self._w3.eth.get_transaction_count(account.address)
            tx = function.build_transaction({"from": account.address, "nonce": nonce})
            signed = account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            if receipt.get("status") == 0:
                raise RegistryTransactionError(f"{name} transaction reverted")
            return Web3.to_hex(tx_hash)

        try:
            tx_hash = await asyncio.to_thread(send)
        except RegistryTransactionError:
            raise
        except ContractLogicError as e:
            self.logger.warning("Registry transaction reverted", function=name, error=str(e))
            raise RegistryTransactionError(str(e)) from e
        except Exception as e:
            self.logger.error("Registry transaction failed", function=name, error=str(e))
            raise RegistryUnavailableError(f"{name} failed: {e}") from e

        self.logger.info("Registry transaction mined", function=name, tx_hash=tx_hash)
        return tx_hash
