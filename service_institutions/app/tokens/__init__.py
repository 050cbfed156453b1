"""
Token package.

Provides the two credentials the Institutions Service mints and checks:

- Provisioning tokens: short-lived, claim-locked JWTs that authorize an
  institution's backend to self-register a wallet as consumer or provider.
- Onboarding callback credentials: a bearer token embedded in the callback
  URL and an HMAC over the callback body, both verified in constant time.
"""

from .provisioning import IssuedToken, TokenCodec, assertion_reference
from .callback import CallbackAuthenticator, CallbackVerification

__all__ = [
    "IssuedToken",
    "TokenCodec",
    "assertion_reference",
    "CallbackAuthenticator",
    "CallbackVerification",
]
