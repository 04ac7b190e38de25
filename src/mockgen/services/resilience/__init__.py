"""Resilience primitives: circuit breakers, rate limiters and their state store."""
