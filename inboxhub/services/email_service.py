"""
Outbound email (invites, verification and password resets).

SMTP is optional: when ``SMTP_HOST`` is not configured every send is skipped
and reported as not delivered. Sends run in the default executor so the
event loop is never blocked on the SMTP conversation.
"""

import asyncio
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from inboxhub.core.config import settings

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    return bool(settings.SMTP_HOST)


def _send_sync(to: str, subject: str, text_body: str, html_body: str = None):
    """Synchronous SMTP send (run in executor thread)."""
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM or settings.SMTP_USER or "inboxhub@localhost"
    msg["To"] = to

    msg.attach(MIMEText(text_body, "plain"))
    if html_body:
        msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
        server.ehlo()
        if settings.SMTP_PORT != 25:
            server.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.sendmail(msg["From"], [to], msg.as_string())

    logger.info(f"Email '{subject}' sent to {to}")


async def send_email(to: str, subject: str, text_body: str, html_body: str = None) -> bool:
    """
    Send one email. Returns True when handed to the SMTP server.
    Delivery failures are logged and reported as False, never raised.
    """
    if not is_configured():
        logger.info(f"SMTP not configured, skipping email '{subject}' to {to}")
        return False

    try:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, _send_sync, to, subject, text_body, html_body)
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to}: {e}")
        return False


async def send_invite_email(to: str, owner_name: str, invite_url: str) -> bool:
    subject = f"Team invitation - {settings.APP_NAME}"
    text_body = (
        f"{owner_name} invited you to help manage their {settings.APP_NAME} inbox.\n\n"
        f"Accept the invitation: {invite_url}\n\n"
        f"The link expires in {settings.INVITE_EXPIRE_DAYS} days."
    )
    html_body = (
        f"<p><strong>{html.escape(owner_name)}</strong> invited you to help manage their "
        f"{html.escape(settings.APP_NAME)} inbox.</p>"
        f'<p><a href="{html.escape(invite_url)}">Accept the invitation</a></p>'
        f"<p>The link expires in {settings.INVITE_EXPIRE_DAYS} days.</p>"
    )
    return await send_email(to, subject, text_body, html_body)


async def send_reset_password_email(to: str, name: str, reset_url: str) -> bool:
    subject = f"Reset your password - {settings.APP_NAME}"
    text_body = (
        f"Hi {name},\n\n"
        f"Reset your password: {reset_url}\n\n"
        f"The link expires in {settings.RESET_TOKEN_EXPIRE_MINUTES} minutes. "
        f"If you did not ask for this, ignore this email."
    )
    return await send_email(to, subject, text_body)


async def send_verification_email(to: str, name: str, verify_url: str) -> bool:
    subject = f"Verify your email - {settings.APP_NAME}"
    text_body = (
        f"Hi {name},\n\n"
        f"Confirm this address to activate your {settings.APP_NAME} account: {verify_url}\n\n"
        f"If you did not sign up, ignore this email."
    )
    html_body = (
        f"<p>Hi {html.escape(name)},</p>"
        f'<p><a href="{html.escape(verify_url)}">Verify your email</a> '
        f"to activate your {html.escape(settings.APP_NAME)} account.</p>"
        f"<p>If you did not sign up, ignore this email.</p>"
    )
    return await send_email(to, subject, text_body, html_body)
