from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import Conflict, ValidationFailed
from .models import PaymentStatus, RegistrationType
from .pricing import CartItem, PricedCart, load_pricing_context, lock_early_bird_remaining, price_cart
from .qr import issue_qr_codes
from .schemas import PaymentSubmission
from .settings import settings

logger = logging.getLogger(__name__)

DUPLICATE_EMAIL_MESSAGE = "A registration with this email already exists."

@dataclass
class SubmissionResult:
    user: models.User
    payment: models.Payment
    registrations: list[models.Registration]
    priced: PricedCart
    qr_codes: list[models.QrCode] = field(default_factory=list)

def cart_items_from(payload: PaymentSubmission) -> list[CartItem]:
    items = []
    for raw in payload.items:
        items.append(
            CartItem(
                type=raw.type or payload.registration_type,
                category_id=raw.category_id,
                jersey_size=raw.jersey_size,
                jerseys=dict(raw.jerseys or {}),
            )
        )
    return items

def _user_fields(payload: PaymentSubmission) -> dict:
    fields = {
        "birth_date": payload.birth_date,
        "gender": payload.gender,
        "current_address": payload.current_address,
        "nationality": payload.nationality,
        "emergency_phone": payload.emergency_phone,
        "medical_history": payload.medical_history,
    }
    fields = {k: v for k, v in fields.items() if v not in (None, "")}
    if payload.medication_allergy is not None:
        fields["medication_allergy"] = payload.medication_allergy
    return fields

def find_or_create_user(session: Session, payload: PaymentSubmission, id_card_url: str | None) -> models.User:
    email = str(payload.email).strip().lower()
    user = session.execute(select(models.User).where(models.User.email == email)).scalar_one_or_none()
    fields = _user_fields(payload)
    if user is None:
        user = models.User(
            name=payload.full_name.strip(),
            email=email,
            phone=(payload.phone or "").strip(),
            role="user",
            id_card_photo=id_card_url,
            **fields,
        )
        session.add(user)
        session.flush()
        return user

    if user.role == "admin":
        raise Conflict(DUPLICATE_EMAIL_MESSAGE)
    for key, value in fields.items():
        setattr(user, key, value)
    if id_card_url:
        user.id_card_photo = id_card_url
    return user

def _registration_order(priced: PricedCart) -> list[str]:
    seen: list[str] = []
    for line in priced.lines:
        if line.item.type not in seen:
            seen.append(line.item.type)
    return seen

def create_registration(
    session: Session,
    payload: PaymentSubmission,
    proof_url: str,
    id_card_url: str | None = None,
) -> SubmissionResult:
    """Write user, payment, registrations, participants and early-bird claims.

    Everything up to the commit is one transaction. QR codes are issued after
    the commit and a failure there leaves the registration in place.
    """
    if not proof_url:
        raise ValidationFailed("Payment proof is required")

    items = cart_items_from(payload)
    tx_id = str(uuid.uuid4())

    try:
        categories, jerseys = load_pricing_context(session, items)
        individual_ids = {i.category_id for i in items if i.type == RegistrationType.INDIVIDUAL}
        slots = lock_early_bird_remaining(session, individual_ids)
        priced = price_cart(categories, jerseys, items, slots, settings.COMMUNITY_MIN_PARTICIPANTS)

        amount = payload.amount if payload.amount is not None else priced.total
        if amount != priced.total:
            logger.warning("Submitted amount %s differs from computed total %s (tx %s)", amount, priced.total, tx_id)

        user = find_or_create_user(session, payload, id_card_url)

        payment = models.Payment(
            transaction_id=tx_id,
            proof_of_payment=proof_url,
            proof_sender_name=payload.proof_sender_name,
            amount=amount,
            status=PaymentStatus.PENDING,
        )
        session.add(payment)
        session.flush()

        registrations: list[models.Registration] = []
        for reg_type in _registration_order(priced):
            registration = models.Registration(
                user_id=user.id,
                payment_id=payment.id,
                registration_type=reg_type,
                group_name=payload.group_name if reg_type in RegistrationType.GROUP else None,
                total_amount=priced.total_for_type(reg_type),
                payment_status=PaymentStatus.PENDING,
            )
            session.add(registration)
            session.flush()

            for line in priced.lines:
                if line.item.type != reg_type:
                    continue
                for jersey_id, count in line.jersey_rows:
                    for _ in range(count):
                        session.add(
                            models.Participant(
                                registration_id=registration.id,
                                category_id=line.item.category_id,
                                jersey_id=jersey_id,
                                early_bird=line.early_bird,
                            )
                        )
                if line.early_bird:
                    session.add(models.EarlyBirdClaim(category_id=line.item.category_id, registration_id=registration.id))
            registrations.append(registration)

        session.commit()
    except IntegrityError:
        session.rollback()
        logger.warning("Duplicate registration rejected for %s", payload.email)
        raise Conflict(DUPLICATE_EMAIL_MESSAGE)
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Registration submitted: tx=%s payment=%s registrations=%s participants=%d",
        tx_id, payment.id, [r.id for r in registrations], sum(l.participants for l in priced.lines),
    )

    result = SubmissionResult(user=user, payment=payment, registrations=registrations, priced=priced)
    for registration in registrations:
        try:
            session.refresh(registration)
            result.qr_codes.extend(issue_qr_codes(session, registration))
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("QR issuance failed for registration %s", registration.id)
    return result
