"""Outbound operator notifications (Telegram) with after-commit dispatch."""

from __future__ import annotations

import logging

import requests
from sqlalchemy import event
from sqlalchemy.orm import Session

from .config import settings
from .services.errors import NotificationError

logger = logging.getLogger(__name__)

# purpose: deliver step/deviation/process messages without ever blocking the triggering transaction
# status: active
# depends_on: backend.cellops.tasks

NOTIFICATION_OUTBOX: list[tuple[str, str]] = []

LEVELS = ("info", "warning")
_LEVEL_PREFIX = {"info": "[info]", "warning": "[WARNING]"}
_PENDING_KEY = "cellops.pending_notifications"


def send_notification(message: str, level: str = "info") -> None:
    """Deliver one message. Raises NotificationError when the transport fails."""
    if level not in LEVELS:
        level = "info"
    if settings.testing:
        NOTIFICATION_OUTBOX.append((level, message))
        return
    token = settings.TELEGRAM_BOT_TOKEN
    chat_id = settings.TELEGRAM_CHAT_ID
    if not token or not chat_id:
        logger.debug("telegram not configured; dropping %s notification", level)
        return
    try:
        resp = requests.post(
            f"https://api.telegram.org/bot{token}/sendMessage",
            json={"chat_id": chat_id, "text": f"{_LEVEL_PREFIX[level]} {message}"},
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        raise NotificationError(f"telegram delivery failed: {exc}") from exc
    if resp.status_code >= 400:
        raise NotificationError(
            f"telegram responded {resp.status_code}: {resp.text[:200]}"
        )


def queue_notification(db: Session, message: str, level: str = "info") -> None:
    """Hold a message on the session until its transaction commits."""
    db.info.setdefault(_PENDING_KEY, []).append((message, level))


def pending_notifications(db: Session) -> list[tuple[str, str]]:
    return list(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    from .tasks import enqueue_notification

    for message, level in pending:
        enqueue_notification(message, level)


@event.listens_for(Session, "after_rollback")
def _discard_after_rollback(session: Session) -> None:
    dropped = session.info.pop(_PENDING_KEY, None)
    if dropped:
        logger.debug("discarded %d notifications after rollback", len(dropped))
