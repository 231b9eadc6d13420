"""
Shared utilities for the IMEI Access service family.

This package aggregates common building blocks consumed by the services:

- base_service: FastAPI service skeleton with health, metrics and error handlers
- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses

Do not import from service_* packages into shared/.
"""
