"""
Institution registry package.

- contract: web3.py client over the on-chain institution registry.
- resolver: cached institution -> backend URL resolution.
- domains: identifier and URL normalization shared by both.
"""

from .contract import InstitutionRegistry
from .resolver import BackendResolver

__all__ = ["InstitutionRegistry", "BackendResolver"]
