"""
Shared utilities for the Institutional Trust Bridge.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and onboarding correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI application scaffolding (middleware, health, metrics)
- test_helpers: Factories for SSO sessions, tokens and signed callbacks

Any cross-service logic should live here to avoid import cycles across
service packages. Only test_helpers may import from service_* packages.
"""
