"""
Reimbursement notification e-mail.

Settings come from the environment (SMTP_HOST, SMTP_PORT, SMTP_USER,
SMTP_PASSWORD, SMTP_FROM, REIMBURSEMENT_EMAIL). Sending never raises; the
outcome is returned as an EmailResult and stored on the purchase.
"""
import base64
import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

logger = logging.getLogger(__name__)


@dataclass
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass
class Attachment:
    name: str
    type: str
    content: str  # base64


def _smtp_config():
    return {
        "host": os.environ.get("SMTP_HOST"),
        "port": int(os.environ.get("SMTP_PORT", "587")),
        "user": os.environ.get("SMTP_USER"),
        "password": os.environ.get("SMTP_PASSWORD"),
        "sender": os.environ.get("SMTP_FROM") or os.environ.get("SMTP_USER"),
        "recipient": os.environ.get("REIMBURSEMENT_EMAIL"),
    }


def is_email_configured() -> bool:
    config = _smtp_config()
    return bool(config["host"] and config["sender"] and config["recipient"])


def build_reimbursement_body(details) -> str:
    lines = [
        "Uusi kulukorvaushakemus / New reimbursement request",
        "",
        f"Kuvaus / Description: {details.get('item_name', '')}",
        f"Summa / Amount: {details.get('item_value', '')} €",
        f"Ostaja / Purchaser: {details.get('purchaser_name', '')}",
        f"Tilinumero / Bank account: {details.get('bank_account', '')}",
        f"Pöytäkirja / Minutes: {details.get('minutes_reference') or '-'}",
    ]
    if details.get("minutes_url"):
        lines.append(f"Pöytäkirjan linkki / Minutes link: {details['minutes_url']}")
    if details.get("notes"):
        lines += ["", f"Lisätiedot / Notes: {details['notes']}"]
    return "\n".join(lines)


def _add_attachment(msg, attachment: Attachment):
    maintype, _, subtype = (attachment.type or "application/octet-stream").partition("/")
    msg.add_attachment(
        base64.b64decode(attachment.content),
        maintype=maintype,
        subtype=subtype or "octet-stream",
        filename=attachment.name,
    )


def send_reimbursement_email(details, purchase_id=None, receipts=None, minutes_attachment=None) -> EmailResult:
    """
    Send the reimbursement request to the treasurer.

    Args:
        details: dict with item_name, item_value, purchaser_name,
            bank_account, minutes_reference, minutes_url and notes.
        purchase_id: Included in the subject when given.
        receipts: list of Attachment.
        minutes_attachment: Attachment with the minutes PDF, if any.
    """
    if not is_email_configured():
        logger.warning("Email not configured, reimbursement email not sent")
        return EmailResult(success=False, error="Email not configured")

    config = _smtp_config()
    msg = EmailMessage()
    msg["From"] = config["sender"]
    msg["To"] = config["recipient"]
    subject = f"Kulukorvaus / Reimbursement: {details.get('item_name', '')}"
    if purchase_id is not None:
        subject += f" (#{purchase_id})"
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=config["sender"].split("@")[-1])
    msg.set_content(build_reimbursement_body(details))

    try:
        for receipt in receipts or []:
            _add_attachment(msg, receipt)
        if minutes_attachment is not None:
            _add_attachment(msg, minutes_attachment)

        with smtplib.SMTP(config["host"], config["port"], timeout=20) as s:
            s.starttls()
            if config["user"] and config["password"]:
                s.login(config["user"], config["password"])
            s.send_message(msg)
    except (smtplib.SMTPException, OSError, ValueError) as e:
        logger.error(f"Failed to send reimbursement email for purchase {purchase_id}: {e}")
        return EmailResult(success=False, error=str(e))

    logger.info(f"Reimbursement email sent for purchase {purchase_id}")
    return EmailResult(success=True, message_id=msg["Message-ID"])
