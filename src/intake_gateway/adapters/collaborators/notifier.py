"""Logging notifier.

Reference NotifierPort that writes new-patient events to the application
log. Events carry ids only, never PHI.
"""

import logging

from intake_gateway.domain.models import NotificationEvent
from intake_gateway.domain.ports import NotifierPort

logger = logging.getLogger(__name__)


class LoggingNotifier(NotifierPort):
    def notify(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.kind}: tenant={event.tenant_id} patient={event.patient_id} "
            f"submission={event.submission_id} source={event.source}"
        )
