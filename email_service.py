import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

import config

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
    """Send one message over SMTP. Returns False on failure instead of raising."""
    if not config.SMTP_HOST:
        logger.warning("SMTP not configured; email '%s' to %s not sent", subject, to)
        return False

    msg = EmailMessage()
    msg["From"] = f'"{config.STORE_NAME}" <{config.EMAIL_FROM}>'
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text or "")
    msg.add_alternative(html, subtype="html")

    try:
        if config.SMTP_SECURE:
            server = smtplib.SMTP_SSL(config.SMTP_HOST, config.SMTP_PORT, timeout=10)
        else:
            server = smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10)
        with server:
            if not config.SMTP_SECURE:
                server.starttls()
            if config.SMTP_USER and config.SMTP_PASS:
                server.login(config.SMTP_USER, config.SMTP_PASS)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email to %s failed: %s", to, exc)
        return False

    logger.info("Email '%s' sent to %s", subject, to)
    return True
