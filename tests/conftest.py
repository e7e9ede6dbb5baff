"""Shared test setup: no OTLP export and no .env leakage into settings."""

import os

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("GATEWAY_MODE", "hosted")
os.environ.setdefault("VERIFICATION_FALLBACK", "strict")
