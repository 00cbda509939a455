import smtplib
from email.message import EmailMessage
from flask import current_app


class EmailDeliveryError(Exception):
    pass


def send_email(subject: str, to_address: str, text_body: str, html_body: str = None) -> bool:
    """Send one message through the configured SMTP server.

    Returns False when no MAIL_HOST is configured. SMTP failures raise
    :class:`EmailDeliveryError` so callers can record the reason.
    """
    cfg = current_app.config
    host = cfg.get("MAIL_HOST")
    port = int(cfg.get("MAIL_PORT", 587))
    user = cfg.get("MAIL_USER")
    password = cfg.get("MAIL_PASSWORD")
    mail_from = cfg.get("MAIL_FROM") or user or "noreply@example.com"

    if not host:
        current_app.logger.warning("MAIL_HOST not configured; skipping email to %s", to_address)
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = mail_from
    msg["To"] = to_address
    msg.set_content(text_body)
    if html_body:
        msg.add_alternative(html_body, subtype="html")

    try:
        if cfg.get("MAIL_USE_SSL"):
            with smtplib.SMTP_SSL(host, port, timeout=30) as server:
                if user and password:
                    server.login(user, password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(host, port, timeout=30) as server:
                if cfg.get("MAIL_USE_TLS", True):
                    server.starttls()
                if user and password:
                    server.login(user, password)
                server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailDeliveryError(str(e)) from e
    current_app.logger.info("Email '%s' sent to %s", subject, to_address)
    return True
