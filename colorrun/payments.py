from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select, func
from sqlalchemy.orm import Session

from . import models, notify
from .bibs import assign_bib_numbers
from .errors import NotFound, ValidationFailed
from .models import PaymentStatus
from .pricing import early_bird_remaining
from .qr import ensure_qr_codes
from .services import ensure_access_code

logger = logging.getLogger(__name__)


@dataclass
class PaymentChange:
    payment: models.Payment
    registrations: list[models.Registration]
    email_sent: bool = False


def resolve_payment(session: Session, registration_id: Optional[int] = None, payment_id: Optional[int] = None) -> models.Payment:
    """A status change addresses a whole payment, by one of its registrations or by id."""
    if registration_id is not None:
        registration = session.get(models.Registration, registration_id)
        if registration is None:
            raise NotFound("Registration not found")
        return registration.payment
    if payment_id is not None:
        payment = session.get(models.Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        return payment
    raise ValidationFailed("Missing registrationId")


def _set_status(payment: models.Payment, status: str) -> None:
    payment.status = status
    for reg in payment.registrations:
        reg.payment_status = status


def _restore_early_bird_claims(session: Session, registration: models.Registration) -> int:
    wanted = Counter(p.category_id for p in registration.participants if p.early_bird)
    if not wanted:
        return 0
    have = dict(
        session.execute(
            select(models.EarlyBirdClaim.category_id, func.count(models.EarlyBirdClaim.id))
            .where(models.EarlyBirdClaim.registration_id == registration.id)
            .group_by(models.EarlyBirdClaim.category_id)
        ).all()
    )
    restored = 0
    for category_id, count in wanted.items():
        missing = count - have.get(category_id, 0)
        if missing <= 0:
            continue
        category = session.get(models.RaceCategory, category_id)
        if early_bird_remaining(session, category) < missing:
            logger.warning(
                "Restoring %d early-bird claims for registration %s exceeds %s capacity",
                missing, registration.id, category.name,
            )
        for _ in range(missing):
            session.add(models.EarlyBirdClaim(category_id=category_id, registration_id=registration.id))
        restored += missing
    session.flush()
    return restored


def _release_early_bird_claims(session: Session, registration: models.Registration) -> int:
    result = session.execute(
        delete(models.EarlyBirdClaim).where(models.EarlyBirdClaim.registration_id == registration.id)
    )
    return result.rowcount or 0


def confirm_payment(session: Session, registration_id: Optional[int] = None, payment_id: Optional[int] = None) -> PaymentChange:
    """Confirm a payment and everything it paid for.

    Generates the access code, assigns missing bib numbers and issues missing QR
    codes, then commits. The confirmation email goes out after the commit and
    its failure does not undo the confirmation.
    """
    payment = resolve_payment(session, registration_id, payment_id)
    previous = payment.status
    registrations = list(payment.registrations)
    if not registrations:
        raise NotFound("Payment has no registrations")
    user = registrations[0].user

    try:
        if previous == PaymentStatus.DECLINED:
            for reg in registrations:
                restored = _restore_early_bird_claims(session, reg)
                if restored:
                    logger.info("Restored %d early-bird claims for registration %s", restored, reg.id)
        _set_status(payment, PaymentStatus.CONFIRMED)
        payment.decline_reason = None
        ensure_access_code(session, user)
        for reg in registrations:
            assign_bib_numbers(session, list(reg.participants))
            ensure_qr_codes(session, reg)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Payment %s confirmed (was %s), registrations %s", payment.id, previous, [r.id for r in registrations])
    for reg in registrations:
        session.refresh(reg)
    change = PaymentChange(payment=payment, registrations=registrations)
    change.email_sent = notify.send_confirmation(user, registrations)
    return change


def decline_payment(
    session: Session,
    registration_id: Optional[int] = None,
    payment_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> PaymentChange:
    payment = resolve_payment(session, registration_id, payment_id)
    previous = payment.status
    registrations = list(payment.registrations)
    if not registrations:
        raise NotFound("Payment has no registrations")
    user = registrations[0].user

    try:
        _set_status(payment, PaymentStatus.DECLINED)
        payment.decline_reason = (reason or "").strip() or None
        released = sum(_release_early_bird_claims(session, reg) for reg in registrations)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info("Payment %s declined (was %s); released %d early-bird slots", payment.id, previous, released)
    change = PaymentChange(payment=payment, registrations=registrations)
    change.email_sent = notify.send_decline(user, registrations, payment.decline_reason)
    return change


def resend_confirmation(session: Session, registration_id: Optional[int] = None, payment_id: Optional[int] = None) -> PaymentChange:
    payment = resolve_payment(session, registration_id, payment_id)
    if payment.status != PaymentStatus.CONFIRMED:
        raise ValidationFailed("Only confirmed registrations can receive their QR codes")
    registrations = list(payment.registrations)
    user = registrations[0].user
    change = PaymentChange(payment=payment, registrations=registrations)
    change.email_sent = notify.send_confirmation(user, registrations)
    return change
