"""
backend/matchcast/services/email_service.py

Purpose:
    Email alerts for match events. Formats a subject and an HTML body per
    event kind and sends it over SMTP in the default thread executor so the
    event loop never blocks on the mail server. Sending is fire-and-forget:
    failures are logged and reported as False, never raised.

Dependencies:
    - smtplib / email.mime
    - matchcast.config
    - matchcast.services.event_models
"""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from matchcast.config import settings
from matchcast.services.event_models import (
    BaseMatchEvent,
    CardEvent,
    GoalEvent,
    MatchEndedEvent,
    MatchStartedEvent,
    SubstitutionEvent,
)

logger = logging.getLogger("matchcast.email_service")


def _event_details(event: BaseMatchEvent) -> list[tuple[str, object]]:
    details: list[tuple[str, object]] = [("Match ID", event.match_id), ("Event ID", event.event_id)]
    if isinstance(event, MatchStartedEvent):
        details += [
            ("Home team", f"{event.home_team_name} (#{event.home_team_id})"),
            ("Away team", f"{event.away_team_name} (#{event.away_team_id})"),
        ]
    elif isinstance(event, MatchEndedEvent):
        details += [
            ("Final home score", event.final_home_score),
            ("Final away score", event.final_away_score),
        ]
    elif isinstance(event, GoalEvent):
        details += [("Minute", event.minute), ("Team ID", event.team_id), ("Player ID", event.player_id)]
    elif isinstance(event, CardEvent):
        details += [
            ("Minute", event.minute),
            ("Team ID", event.team_id),
            ("Player ID", event.player_id),
            ("Card", event.card_severity.value),
        ]
    elif isinstance(event, SubstitutionEvent):
        details += [
            ("Minute", event.minute),
            ("Team ID", event.team_id),
            ("Player in", event.player_in_id),
            ("Player out", event.player_out_id),
        ]
    return details


def format_event_alert(event: BaseMatchEvent) -> tuple[str, str]:
    """Build (subject, html_body) for one match event."""
    kind = event.kind.value
    subject = f"Match event alert - {kind} in match {event.match_id}"
    rows = "<br/>".join(
        f"<b>{html.escape(label)}:</b> {html.escape(str(value))}" for label, value in _event_details(event)
    )
    body = f"""
<html>
<body>
    <h1>New match event</h1>
    <p>A <b>{html.escape(kind)}</b> event was recorded for match <b>{html.escape(event.match_id)}</b>
    at {html.escape(event.event_time.isoformat())}.</p>
    <p>Event details:</p>
    <p>{rows}</p>
    <p>This is an automated alert from matchcast.</p>
</body>
</html>
"""
    return subject, body


async def send_alert_email(subject: str, body: str) -> bool:
    """Send an HTML alert. True when handed to the SMTP server, False if disabled or failed."""
    if not settings.SMTP_ENABLED:
        logger.debug("SMTP disabled, skipping email subject=%s", subject)
        return False
    if not settings.SMTP_TO_EMAIL:
        logger.warning("SMTP_TO_EMAIL not configured, skipping email subject=%s", subject)
        return False

    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(
            loop.run_in_executor(
                None,
                _send_smtp_email,
                settings.SMTP_HOST,
                settings.SMTP_PORT,
                settings.SMTP_USERNAME,
                settings.SMTP_PASSWORD,
                settings.SMTP_FROM_EMAIL,
                settings.SMTP_TO_EMAIL,
                subject,
                body,
                settings.SMTP_TIMEOUT_SECONDS,
            ),
            timeout=settings.SMTP_TIMEOUT_SECONDS + 1.0,
        )
    except (smtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
        logger.error("Failed to send alert email subject=%s error=%s", subject, str(exc) or type(exc).__name__)
        return False

    logger.info("Alert email sent subject=%s to=%s", subject, settings.SMTP_TO_EMAIL)
    return True


def _send_smtp_email(
    host: str,
    port: int,
    username: str,
    password: str,
    from_email: str,
    to_email: str,
    subject: str,
    body: str,
    timeout: float,
) -> None:
    """Synchronous SMTP send (runs in executor)."""
    msg = MIMEMultipart()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "html"))

    with smtplib.SMTP(host, port, timeout=timeout) as server:
        server.starttls()
        if username:
            server.login(username, password)
        server.sendmail(from_email, [to_email], msg.as_string())
