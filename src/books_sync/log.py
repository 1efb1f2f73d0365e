"""
Logging setup and notification forwarding.

All modules log through structlog. ``configure_logging`` installs two extra
processors in the chain:

- ``redact_secrets`` masks values whose key looks like a credential
- ``NotificationForwarder`` hands errors (and warnings logged with
  ``notify=True``) to an external sink such as an email sender
"""

import logging
import sys
from typing import Any, Protocol

import structlog

_fallback = logging.getLogger("books_sync.notifications")

SECRET_KEY_MARKERS = ("token", "secret", "password", "authorization", "api_key", "encryption_key")


class NotificationSink(Protocol):
    def __call__(self, severity: str, title: str, message: str, context: dict[str, Any]) -> None:
        ...


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        if key == "event":
            continue
        if any(marker in key.lower() for marker in SECRET_KEY_MARKERS):
            value = event_dict[key]
            if isinstance(value, str) and value:
                event_dict[key] = f"{value[:4]}***" if len(value) > 12 else "***"
            elif value is not None:
                event_dict[key] = "***"
    return event_dict


class NotificationForwarder:
    """structlog processor that forwards notable events to a sink."""

    def __init__(self, sink: NotificationSink | None = None):
        self.sink = sink
        self.sent = 0
        self.dropped = 0

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        notify = event_dict.pop("notify", False)
        if self.sink is None:
            return event_dict

        if method_name in ("error", "critical", "exception") or notify:
            title = str(event_dict.get("event", ""))
            context = {
                k: v for k, v in event_dict.items()
                if k not in ("event", "timestamp", "level")
            }
            message = str(context.pop("error", "") or title)
            try:
                self.sink(method_name, title, message, context)
                self.sent += 1
            except Exception as e:
                self.dropped += 1
                _fallback.warning("Notification sink failed: %s", e)

        return event_dict


_forwarder = NotificationForwarder()


def get_forwarder() -> NotificationForwarder:
    return _forwarder


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    sink: NotificationSink | None = None,
) -> None:
    """Configure structlog for the process."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(stream=sys.stderr, level=numeric_level, format="%(message)s")
    _forwarder.sink = sink

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        _forwarder,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
