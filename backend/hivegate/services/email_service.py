import os
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '../../.env'))

logger = logging.getLogger(__name__)

EMAIL_SENDER = os.getenv("EMAIL_SENDER")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")

SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))

OTP_SUBJECT = "EventHive - Email Verification Code"


def email_configured() -> bool:
    return bool(EMAIL_SENDER and EMAIL_PASSWORD)


def send_email(to_email: str, subject: str, body: str, html: str | None = None) -> bool:
    if not email_configured():
        logger.warning("[EmailService] Email configuration missing - EMAIL_SENDER or EMAIL_PASSWORD not set")
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = EMAIL_SENDER
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))
    if html:
        msg.attach(MIMEText(html, "html"))

    try:
        with smtplib.SMTP(SMTP_SERVER, SMTP_PORT) as server:
            server.starttls()
            server.login(EMAIL_SENDER, EMAIL_PASSWORD)
            server.sendmail(EMAIL_SENDER, [to_email], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"[EmailService] Failed to send email to {to_email}: {e}")
        return False


def send_otp_email(to_email: str, code: str, username: str, expires_in_minutes: int = 5) -> bool:
    safe_username = html.escape(username or "")
    body = (
        f"Hello {username},\n\n"
        f"Thank you for registering with EventHive. Your verification code is: {code}\n\n"
        f"This code expires in {expires_in_minutes} minutes. If you did not request it, ignore this email."
    )
    html_body = (
        f"<p>Hello <strong>{safe_username}</strong>,</p>"
        "<p>Thank you for registering with EventHive. To complete your registration, "
        "please use the verification code below:</p>"
        f"<div style=\"font-size:32px;font-weight:bold;letter-spacing:8px\">{code}</div>"
        f"<p>This code expires in {expires_in_minutes} minutes.</p>"
    )
    return send_email(to_email, OTP_SUBJECT, body, html_body)
