"""
Shared utilities for the Access Review platform.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request and actor correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for external calls
- circuit_breaker: Protection for the identity directory and other collaborators

Do not import from service packages into shared/.
"""
