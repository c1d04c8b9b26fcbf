import logging

from celery import Celery
from kombu.exceptions import OperationalError

from .config import settings
from .metrics import notification_failures_total
from .services.errors import NotificationError
from . import notify

logger = logging.getLogger(__name__)

CELERY_BROKER_URL = settings.CELERY_BROKER_URL
celery_app = Celery("cellops", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or settings.testing
)


@celery_app.task(name="cellops.tasks.dispatch_notification")
def dispatch_notification(message: str, level: str = "info") -> bool:
    try:
        notify.send_notification(message, level)
    except NotificationError:
        notification_failures_total.inc()
        logger.warning("notification not delivered (%s): %s", level, message, exc_info=True)
        return False
    return True


def enqueue_notification(message: str, level: str = "info"):
    if celery_app.conf.task_always_eager:
        return dispatch_notification(message, level)
    try:
        dispatch_notification.delay(message, level)
    except OperationalError:
        notification_failures_total.inc()
        logger.warning("broker unavailable; notification dropped: %s", message, exc_info=True)
        return False
    return True
