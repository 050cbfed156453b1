"""
Institutions Service package for the Institutional Trust Bridge.

This package exposes the FastAPI application that lets a federated
institution join the marketplace without the marketplace holding its
credentials:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.tokens: Provisioning tokens and onboarding callback authentication.
- app.registry: On-chain institution registry client and backend resolver.
- app.onboarding: WebAuthn onboarding orchestration and result store.
- app.registration: Consumer/provider self-registration gateway.

Design notes:
- Keep the package import side-effects minimal; module import must not
  perform network or chain calls. All IO happens in route handlers.
- Use the shared/ utilities for configuration, logging, metrics and errors.
- Every stateful component (resolver cache, result store) is an explicit
  instance created by the service and exposes its own clear() hook.
"""
