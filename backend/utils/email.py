import smtplib
from email.message import EmailMessage
from typing import Optional
from core.config import settings
import logging

logger = logging.getLogger(__name__)

BRAND = "Finance Tracker"

# kind -> (subject, heading, intro, footer note)
OTP_TEMPLATES = {
    "verify": (
        f"Verify Your {BRAND} Account",
        "Verify Your Account",
        f"Welcome to {BRAND}! To complete your registration, please verify your account using the code below.",
        "If you didn't create an account, please ignore this email.",
    ),
    "login": (
        f"Your {BRAND} Login Code",
        "Login Verification",
        f"Someone is trying to sign in to your {BRAND} account. If this was you, please use the code below.",
        "If you didn't try to sign in, please change your password immediately.",
    ),
    "resend": (
        f"New {BRAND} Verification Code",
        "New Verification Code",
        "You requested a new verification code. Your previous codes are no longer valid.",
        "Don't share this code with anyone.",
    ),
    "password_reset": (
        f"Reset your {BRAND} password",
        "Reset your password",
        "Use the following code to reset your password.",
        "If you did not request a password reset, you can safely ignore this email.",
    ),
}


def _build_message(subject: str, to_email: str, html_body: str, text_body: Optional[str] = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>" if settings.SMTP_FROM_NAME and settings.SMTP_FROM_EMAIL else (settings.SMTP_FROM_EMAIL or "no-reply@example.com")
    msg["To"] = to_email
    if text_body:
        msg.set_content(text_body)
    msg.add_alternative(html_body, subtype="html")
    return msg


def send_email(subject: str, to_email: str, html_body: str, text_body: Optional[str] = None) -> bool:
    if not settings.SMTP_HOST or not settings.SMTP_FROM_EMAIL:
        if settings.EMAIL_CONSOLE_FALLBACK:
            logger.info(f"SMTP not configured; email to {to_email} '{subject}':\n{text_body}")
            return True
        logger.warning("SMTP not configured; skipping email send")
        return False
    try:
        msg = _build_message(subject, to_email, html_body, text_body)
        timeout = settings.SMTP_TIMEOUT or 15
        debug = 1 if settings.SMTP_DEBUG else 0
        if settings.SMTP_USE_SSL:
            with smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, timeout=timeout) as server:
                server.set_debuglevel(debug)
                if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                server.send_message(msg)
        else:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=timeout) as server:
                server.set_debuglevel(debug)
                if settings.SMTP_USE_TLS:
                    server.starttls()
                if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                server.send_message(msg)
        logger.info(f"Sent email to {to_email} with subject '{subject}'")
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.error(f"Failed to send email to {to_email}: {exc}")
        return False


def render_otp_email(otp_code: str, kind: str = "verify"):
    """Return (subject, html, text) for a passcode email of the given kind."""
    subject, heading, intro, note = OTP_TEMPLATES.get(kind, OTP_TEMPLATES["verify"])
    minutes = settings.OTP_EXPIRE_MINUTES
    text = f"{intro}\n\nYour code is {otp_code}. It expires in {minutes} minutes.\n\n{note}"
    html = f"""
    <div style='font-family: Arial, sans-serif; line-height: 1.5; max-width: 600px; margin: 0 auto;'>
      <h2>{heading}</h2>
      <p>{intro}</p>
      <p style='font-size: 32px; font-weight: bold; letter-spacing: 8px; font-family: monospace;'>{otp_code}</p>
      <p>This code will expire in <strong>{minutes} minutes</strong>. Don't share it with anyone.</p>
      <p>{note}</p>
      <p>The {settings.SMTP_FROM_NAME or BRAND} Team</p>
    </div>
    """
    return subject, html, text


def send_otp_email(to_email: str, otp_code: str, kind: str = "verify") -> bool:
    subject, html, text = render_otp_email(otp_code, kind)
    return send_email(subject, to_email, html, text)
