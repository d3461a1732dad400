"""
Structured logging for the content cache service.

Every event is a JSON object carrying the service name, the request id of the
inbound HTTP request (when there is one) and the origin of the cache activity
(``request``, ``warmup``, ``refresh``, ``webhook``), so a burst of remote
calls can be traced back to what caused it.
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
origin_var: ContextVar[Optional[str]] = ContextVar("cache_origin", default=None)


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structlog over stdlib logging for ``service_name``."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_correlation_context,
            add_monotonic_time,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # httpx logs every request at info; the client already logs what matters
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Logger names are "<service>.<component>"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service, _, component = logger_name.partition(".")
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the request id and the cache-activity origin."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    origin = origin_var.get()
    if origin:
        event_dict.setdefault("origin", origin)
    return event_dict


def add_monotonic_time(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Monotonic clock reading, for ordering events from concurrent tasks."""
    event_dict["monotonic"] = round(time.monotonic(), 6)
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


@contextmanager
def log_origin(origin: str) -> Iterator[None]:
    """Tag every event logged inside the block (and tasks it spawns) with ``origin``."""
    token = origin_var.set(origin)
    try:
        yield
    finally:
        origin_var.reset(token)


def clear_context() -> None:
    request_id_var.set(None)
    origin_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger; use ``"content.<component>"`` names."""
    return structlog.get_logger(name)
