"""
backend/matchcast/services/event_handlers/email_handlers.py

Purpose:
    Email consumer: one alert per event. Mail failures never fail the message.

Dependencies:
    - matchcast.services.email_service
"""

from __future__ import annotations

import logging

from matchcast.services import email_service
from matchcast.services.event_models import BaseMatchEvent

logger = logging.getLogger("matchcast.event_handlers.email")


async def handle_email(event: BaseMatchEvent) -> None:
    subject, body = email_service.format_event_alert(event)
    sent = await email_service.send_alert_email(subject, body)
    logger.debug("Email alert event_id=%s sent=%s", event.event_id, sent)
