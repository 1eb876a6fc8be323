"""Logging configuration for the application"""
import logging

from studiofinder.core.config import settings


def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def bind_event_logger(event_id: str, event_type: str) -> logging.LoggerAdapter:
    """Logger for a single webhook invocation, tagged with the provider event

    Every record emitted through the adapter is prefixed with the event id and
    type so a support engineer can grep one delivery end to end.
    """
    return EventLoggerAdapter(webhook_logger, {"event_id": event_id, "event_type": event_type})


class EventLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.pop("extra", None) or {})
        kwargs["extra"] = extra
        return f"[{self.extra['event_type']} {self.extra['event_id']}] {msg}", kwargs


# Parent logger for per-event adapters
webhook_logger = logging.getLogger("webhook")
