from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .runtime import InstanceState
from .settings import Settings, settings as default_settings


def format_alert(service: str, state: InstanceState, detail: str, restart_count: int = 0) -> tuple[str, str]:
    """Subject and body for a service state alert."""
    up = state == InstanceState.HEALTHY
    subject = f"[topo] {'RECOVERED' if up else 'DOWN'}: {service}"
    lines = [
        f"Service: {service}",
        f"State: {state.value}",
        f"Restarts: {restart_count}",
        f"Detail: {detail or '-'}",
    ]
    return subject, "\n".join(lines)


def smtp_configured(config: Settings) -> bool:
    return bool(
        config.enable_email
        and config.smtp_host
        and config.smtp_port
        and config.smtp_user
        and config.smtp_password
        and config.email_from
        and config.email_to
    )


def send_alert(
    service: str,
    state: InstanceState,
    detail: str,
    restart_count: int = 0,
    config: Settings | None = None,
) -> bool:
    """E-mail a state alert for ``service`` when SMTP is configured.

    Environment variables:
      - TOPO_ENABLE_EMAIL=true
      - TOPO_SMTP_HOST / TOPO_SMTP_PORT
      - TOPO_SMTP_USER / TOPO_SMTP_PASSWORD
      - TOPO_EMAIL_FROM / TOPO_EMAIL_TO (comma separated)

    Delivery problems are recorded in the event log, never raised.
    """
    config = config or default_settings
    if not smtp_configured(config):
        return False

    subject, body = format_alert(service, state, detail, restart_count)
    recipients = [r.strip() for r in config.email_to.split(",") if r.strip()]
    msg = MIMEMultipart()
    msg["From"] = config.email_from
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(config.smtp_user, config.smtp_password)
            server.sendmail(config.email_from, recipients, msg.as_string())
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert e-mail not sent: {type(e).__name__}: {e}", service_name=service)
        return False
    db.log_event("INFO", f"Alert e-mail sent: {subject}", service_name=service)
    return True
