import logging
from typing import Optional, Dict
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    host: Optional[str],
    path: Optional[str],
    start_message: str,
    extra_attrs: Optional[Dict] = None,
    level: int = logging.DEBUG,
):
    """Context manager to create a span, set common attributes, and log a start message."""
    with tracer.start_as_current_span(operation) as span:
        if host:
            span.set_attribute("gateway.host", host)
        if path:
            span.set_attribute("gateway.path", path)
        if extra_attrs:
            for k, v in extra_attrs.items():
                span.set_attribute(k, v)
        logger.log(level, start_message)
        yield span
