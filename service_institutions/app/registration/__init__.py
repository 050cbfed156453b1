"""
Registration package.

Authenticates institutional self-registration requests (shared API key or
provisioning token) and drives the on-chain consumer/provider registration.
"""

from .gateway import RegistrationCredential, RegistrationGateway, RegistrationOutcome

__all__ = ["RegistrationCredential", "RegistrationGateway", "RegistrationOutcome"]
