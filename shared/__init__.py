"""
Shared utilities for the Access Engine.

This package aggregates common building blocks consumed by all services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- models: Domain records (accounts, credentials, resources) and enums
- store / repositories: Key-value store with atomic conditional commits,
  and typed repositories over it
- base_service: FastAPI service base class
- test_helpers: Factories and a controllable clock for tests

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service packages into shared/.
"""
