import os

from ddtrace.trace import tracer


def configure_tracing():
    # Tracing is opt-in
    tracer.enabled = os.getenv("DD_TRACE_ENABLED", "false").lower() in ("true", "1")
