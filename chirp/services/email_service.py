"""Outgoing account emails (verification and password reset).

Delivery goes through SMTP when ``SMTP_HOST`` is set. Without it, development
builds log the message instead and production refuses to pretend it was sent.
"""
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from chirp.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Template:
    subject: str
    intro: str
    action: str
    outro: str
    expiry_setting: str


VERIFICATION_TEMPLATE = _Template(
    subject="Verify your email address",
    intro="Welcome to Chirp! Please verify your email address to activate your account.",
    action="Verify email",
    outro="This link will expire in {expiry}. If you did not create this account, ignore this message.",
    expiry_setting="EMAIL_VERIFY_TOKEN_EXPIRE_MINUTES",
)

PASSWORD_RESET_TEMPLATE = _Template(
    subject="Reset your password",
    intro="You requested a password reset for your Chirp account.",
    action="Reset password",
    outro="This link will expire in {expiry}. If you did not request this, ignore this message.",
    expiry_setting="PASSWORD_RESET_TOKEN_EXPIRE_MINUTES",
)


def _build_frontend_link(path: str, token: str) -> str:
    base = f"{settings.FRONTEND_URL.rstrip('/')}/{path.lstrip('/')}"
    parsed = urlparse(base)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query["token"] = token
    return urlunparse(parsed._replace(query=urlencode(query)))


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def _render(template: _Template, display_name: str | None, link: str) -> tuple[str, str]:
    name = display_name or "there"
    outro = template.outro.format(expiry=_describe_minutes(getattr(settings, template.expiry_setting)))
    text = f"Hi {name},\n\n{template.intro}\n{template.action}: {link}\n\n{outro}"
    html = (
        f"<p>Hi {name},</p>"
        f"<p>{template.intro}</p>"
        f"<p><a href=\"{link}\">{template.action}</a></p>"
        f"<p>{outro}</p>"
    )
    return text, html


def _deliver(message: EmailMessage) -> None:
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS) as smtp:
        smtp.ehlo()
        if settings.SMTP_USE_TLS:
            smtp.starttls()
            smtp.ehlo()
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        smtp.send_message(message)


def _send(to_email: str, template: _Template, display_name: str | None, link: str) -> None:
    text, html = _render(template, display_name, link)

    if not settings.SMTP_HOST:
        if settings.IS_PRODUCTION:
            raise RuntimeError("SMTP is not configured (SMTP_HOST is required in production).")
        logger.info("SMTP not configured; email '%s' to %s not sent:\n%s", template.subject, to_email, text)
        return
    if not settings.SMTP_FROM_EMAIL:
        raise RuntimeError("SMTP is misconfigured (SMTP_FROM_EMAIL is required when SMTP_HOST is set).")

    message = EmailMessage()
    message["Subject"] = template.subject
    message["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
    message["To"] = to_email
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    _deliver(message)
    logger.info("Sent '%s' email to %s", template.subject, to_email)


def send_verification_email(to_email: str, token: str, display_name: str | None) -> None:
    _send(to_email, VERIFICATION_TEMPLATE, display_name, _build_frontend_link(settings.EMAIL_VERIFY_PATH, token))


def send_password_reset_email(to_email: str, token: str, display_name: str | None) -> None:
    _send(to_email, PASSWORD_RESET_TEMPLATE, display_name, _build_frontend_link(settings.PASSWORD_RESET_PATH, token))
