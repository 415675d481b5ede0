from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from jinja2 import Environment, PackageLoader, select_autoescape

from . import models
from .qr import claim_url, make_qr_png_bytes
from .settings import settings

logger = logging.getLogger(__name__)

templates = Environment(
    loader=PackageLoader("colorrun", "templates"),
    autoescape=select_autoescape(["html"]),
)


class MailerNotConfigured(RuntimeError):
    pass


@dataclass
class InlineImage:
    cid: str
    data: bytes
    filename: str


@dataclass
class OutgoingMail:
    to: str
    subject: str
    html: str
    images: list[InlineImage] = field(default_factory=list)


class SmtpMailer:
    """Sends mail through the SMTP account configured in settings."""

    def build_message(self, mail: OutgoingMail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((settings.EMAIL_FROM_NAME, settings.EMAIL_USER))
        msg["To"] = mail.to
        msg["Subject"] = mail.subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(mail.html, subtype="html")
        html_part = msg.get_payload()[-1]
        for img in mail.images:
            html_part.add_related(img.data, "image", "png", cid=f"<{img.cid}>", filename=img.filename)
        return msg

    def send(self, mail: OutgoingMail) -> None:
        if not settings.EMAIL_USER or not settings.EMAIL_PASS:
            raise MailerNotConfigured("SMTP credentials are not configured. Set EMAIL_USER and EMAIL_PASS.")
        msg = self.build_message(mail)
        if settings.EMAIL_SECURE:
            with smtplib.SMTP_SSL(settings.EMAIL_HOST, settings.EMAIL_PORT, context=ssl.create_default_context()) as smtp:
                smtp.login(settings.EMAIL_USER, settings.EMAIL_PASS)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(settings.EMAIL_HOST, settings.EMAIL_PORT) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                smtp.login(settings.EMAIL_USER, settings.EMAIL_PASS)
                smtp.send_message(msg)
        logger.info("Mail sent to %s: %s", mail.to, mail.subject)


# swapped for a recording fake in tests
mailer = SmtpMailer()


def _render(template: str, **context) -> str:
    return templates.get_template(f"email/{template}.html").render(app_url=settings.APP_URL, **context)


def send_submission_ack(email: str, name: str, registration_ids: list[int], transaction_id: str) -> bool:
    """Background task after a submission. Never raises."""
    try:
        html = _render("submission", name=name or "Participant", registration_ids=registration_ids, transaction_id=transaction_id)
        mailer.send(OutgoingMail(to=email, subject="Registration received, awaiting confirmation", html=html))
        return True
    except Exception:
        logger.exception("Submission email to %s failed", email)
        return False


def confirmation_mail(user: models.User, registrations: list[models.Registration]) -> OutgoingMail:
    groups = []
    images = []
    for reg in registrations:
        codes = []
        for qr in reg.qr_codes:
            cid = make_msgid(idstring=f"qr{qr.id}", domain="colorrun")[1:-1]
            images.append(InlineImage(cid=cid, data=make_qr_png_bytes(claim_url(qr.qr_code_data)), filename=f"qr-{qr.id}.png"))
            codes.append({"cid": cid, "category": qr.category.name, "packs": qr.total_packs, "url": claim_url(qr.qr_code_data)})
        groups.append({"registration": reg, "codes": codes})
    html = _render("confirmed", name=user.name, access_code=user.access_code, groups=groups)
    return OutgoingMail(to=user.email, subject="Ciputra Color Run - Your Access Code", html=html, images=images)


def send_confirmation(user: models.User, registrations: list[models.Registration]) -> bool:
    """Access code plus one inline QR image per code. Failure is logged only."""
    try:
        mailer.send(confirmation_mail(user, registrations))
        return True
    except Exception:
        logger.exception("Confirmation email to %s failed", user.email)
        return False


def send_decline(user: models.User, registrations: list[models.Registration], reason: str | None) -> bool:
    try:
        html = _render("declined", name=user.name, registration_ids=[r.id for r in registrations], reason=reason)
        mailer.send(OutgoingMail(to=user.email, subject="Ciputra Color Run - Payment declined", html=html))
        return True
    except Exception:
        logger.exception("Decline email to %s failed", user.email)
        return False
