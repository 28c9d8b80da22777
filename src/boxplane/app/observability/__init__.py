"""Observability helpers (structured logging, Prometheus metrics, request middleware)."""
