from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .db import log_event
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - NLBC_ENABLE_EMAIL=true
      - NLBC_SMTP_HOST / NLBC_SMTP_PORT
      - NLBC_SMTP_USER / NLBC_SMTP_PASSWORD
      - NLBC_EMAIL_FROM / NLBC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False


def leaked_resource(service: str, listener_handle: str, backend_group_handle: str, detail: str) -> bool:
    subject = f"SEV0 nlbc: leaked load balancer listener for {service}"
    body = (
        f"Service: {service}\n"
        f"Listener: {listener_handle}\n"
        f"Target group: {backend_group_handle}\n"
        f"Detail: {detail}\n\n"
        "The listener and target group could not be cleaned up and need manual removal."
    )
    return send_email(subject, body)
