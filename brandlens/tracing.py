import os
from collections.abc import Mapping

from ddtrace.trace import tracer

TRACE_ENABLED_VAR = "DD_TRACE_ENABLED"


def tracing_requested(environ: Mapping[str, str] | None = None) -> bool:
    environ = os.environ if environ is None else environ
    return environ.get(TRACE_ENABLED_VAR, "false").strip().lower() in ("true", "1")


def configure_tracing(environ: Mapping[str, str] | None = None) -> bool:
    """
    Turns the ddtrace tracer on when DD_TRACE_ENABLED is set, off otherwise,
    and returns the resulting state. Spans are opened around embedding
    calls, queue batches and semantic searches.
    """
    tracer.enabled = tracing_requested(environ)
    return tracer.enabled
