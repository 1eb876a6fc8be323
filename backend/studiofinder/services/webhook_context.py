"""Per-invocation state handed to every webhook handler"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from studiofinder.core.logging import bind_event_logger
from studiofinder.schemas.events import IncomingEvent
from studiofinder.services import email_service


@dataclass
class WebhookContext:
    db: Session
    event: IncomingEvent
    log: logging.LoggerAdapter
    now: datetime
    notify: Optional[Callable[[str, str, Dict[str, Any]], bool]] = None
    notifications: List[str] = field(default_factory=list)

    @classmethod
    def for_event(cls, event: IncomingEvent, db: Session, **overrides) -> "WebhookContext":
        return cls(
            db=db,
            event=event,
            log=bind_event_logger(event.provider_event_id, event.type),
            now=overrides.pop("now", None) or datetime.now(timezone.utc),
            **overrides,
        )

    def send_notification(self, to: str, template_key: str, variables: Dict[str, Any]) -> bool:
        """Best-effort send; a failure is logged and never propagates"""
        self.notifications.append(template_key)
        try:
            notify = self.notify or email_service.send_templated_email
            sent = notify(to, template_key, variables)
        except Exception as e:
            self.log.error(f"Notification '{template_key}' to {to} raised: {e}", exc_info=True)
            return False
        if not sent:
            self.log.warning(f"Notification '{template_key}' to {to} was not sent")
        return bool(sent)
