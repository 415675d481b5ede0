from __future__ import annotations

import hashlib
import logging
import re
import time
import unicodedata
from collections import Counter
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import select, func
from sqlalchemy.orm import Session

from . import models
from .errors import NotFound, Conflict, ValidationFailed
from .models import PaymentStatus
from .pricing import early_bird_remaining, validate_tiers
from .schemas import (
    ApplicantDetails,
    CategoryOut,
    CategoryUpdate,
    ConfirmedSummary,
    DeclinedSummary,
    PaymentInfo,
    PendingSummary,
    QrCodeOut,
    UserUpdateIn,
)
from .settings import settings

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------------------------
# Users / auth
# ---------------------------

def _bcrypt_input(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    if len(password.encode("utf-8")) > 72:
        return hashlib.sha256(password.encode("utf-8")).hexdigest()
    return password

def hash_password(password: str) -> str:
    return pwd_context.hash(_bcrypt_input(password))

def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(_bcrypt_input(password), password_hash)
    except ValueError:
        return False

def ensure_admin_user(session: Session) -> models.User:
    """Ensure the admin account from settings exists and carries its password."""
    admin = session.execute(
        select(models.User).where(models.User.role == "admin", models.User.email == settings.COLORRUN_ADMIN_EMAIL)
    ).scalar_one_or_none()
    if admin is None:
        admin = models.User(
            name=settings.COLORRUN_ADMIN_USERNAME,
            email=settings.COLORRUN_ADMIN_EMAIL,
            phone="",
            role="admin",
            access_code=generate_access_code(session, f"admin {settings.COLORRUN_ADMIN_USERNAME}"),
        )
        session.add(admin)
        logger.info("Created admin user %s", settings.COLORRUN_ADMIN_USERNAME)
    if not verify_password(settings.COLORRUN_ADMIN_PASSWORD, admin.password_hash):
        admin.password_hash = hash_password(settings.COLORRUN_ADMIN_PASSWORD)
    session.commit()
    return admin

def authenticate_admin(session: Session, username: str, password: str) -> Optional[models.User]:
    if username != settings.COLORRUN_ADMIN_USERNAME:
        return None
    admin = session.execute(
        select(models.User).where(models.User.role == "admin", models.User.email == settings.COLORRUN_ADMIN_EMAIL)
    ).scalar_one_or_none()
    if admin and verify_password(password, admin.password_hash):
        return admin
    return None

def get_user_by_access_code(session: Session, access_code: str) -> Optional[models.User]:
    if not access_code:
        return None
    return session.execute(
        select(models.User).where(models.User.access_code == access_code.strip())
    ).scalar_one_or_none()

def _access_code_base(name: str) -> str:
    s = unicodedata.normalize("NFD", name or "")
    s = "".join(ch for ch in s if not unicodedata.combining(ch)).lower()
    s = re.sub(r"[^a-z0-9\s]", "", s).strip()
    s = re.sub(r"\s+", "_", s).strip("_")
    return s[:30] or "user"

def generate_access_code(session: Session, name: str) -> str:
    """Readable unique code from a name: "Félicia Angelie" -> "felicia_angelie"."""
    base = _access_code_base(name)
    code = base
    counter = 0
    while session.execute(select(models.User.id).where(models.User.access_code == code)).first():
        counter += 1
        code = f"{base}_{counter}"
        if counter > 1000:
            code = f"{base}_{int(time.time())}"
            break
    return code

def ensure_access_code(session: Session, user: models.User) -> str:
    if not user.access_code:
        user.access_code = generate_access_code(session, user.name or user.email)
        session.flush()
        logger.info("Generated access code for user %s", user.id)
    return user.access_code

def update_user_contact(session: Session, user: models.User, payload: UserUpdateIn) -> models.User:
    email = str(payload.email).strip().lower()
    if email != user.email:
        taken = session.execute(select(models.User.id).where(models.User.email == email)).first()
        if taken:
            raise Conflict("Email is already used by another account")
    user.email = email
    user.phone = payload.phone.strip()
    session.commit()
    return user

# ---------------------------
# Categories / jerseys
# ---------------------------

def list_categories(session: Session) -> list[CategoryOut]:
    rows = session.execute(select(models.RaceCategory).order_by(models.RaceCategory.id.asc())).scalars().all()
    out = []
    for c in rows:
        item = CategoryOut.model_validate(c)
        item.early_bird_remaining = early_bird_remaining(session, c)
        out.append(item)
    return out

def list_jerseys(session: Session) -> list[models.JerseyOption]:
    return session.execute(select(models.JerseyOption).order_by(models.JerseyOption.id.asc())).scalars().all()

def update_category(session: Session, category_id: int, payload: CategoryUpdate) -> CategoryOut:
    category = session.get(models.RaceCategory, category_id)
    if not category:
        raise NotFound("Race category not found")
    changes = payload.model_dump(exclude_unset=True)
    if "base_price" in changes and changes["base_price"] is None:
        raise ValidationFailed("basePrice cannot be empty")
    for key, value in changes.items():
        setattr(category, key, value)
    try:
        validate_tiers(category)
    except Exception:
        session.rollback()
        raise
    session.commit()
    logger.info("Race category %s updated: %s", category.name, sorted(changes))
    item = CategoryOut.model_validate(category)
    item.early_bird_remaining = early_bird_remaining(session, category)
    return item

# ---------------------------
# Registrations / reporting
# ---------------------------

def get_payment(session: Session, payment_id: int) -> models.Payment:
    payment = session.get(models.Payment, payment_id)
    if not payment:
        raise NotFound("Payment not found")
    return payment

def list_user_registrations(session: Session, user: models.User) -> list[models.Registration]:
    return session.execute(
        select(models.Registration)
        .where(models.Registration.user_id == user.id)
        .order_by(models.Registration.created_at.desc(), models.Registration.id.desc())
    ).scalars().all()

def status_counts(session: Session) -> dict[str, int]:
    rows = session.execute(
        select(models.Registration.payment_status, func.count(models.Registration.id))
        .group_by(models.Registration.payment_status)
    ).all()
    counts = {status: 0 for status in PaymentStatus.ALL}
    for status, n in rows:
        if status in counts:
            counts[status] = n
    return counts

def summarize_registration(reg: models.Registration):
    payment = reg.payment
    user = reg.user
    base = dict(
        registration_id=reg.id,
        registration_ids=[r.id for r in payment.registrations],
        user_name=user.name or "-",
        email=user.email,
        phone=user.phone,
        registration_type=reg.registration_type,
        group_name=reg.group_name,
        total_amount=reg.total_amount,
        created_at=reg.created_at,
        participant_count=len(reg.participants),
        category_counts=dict(Counter(p.category.name for p in reg.participants)),
        jersey_sizes=dict(Counter(p.jersey.size for p in reg.participants)),
        payment=PaymentInfo.model_validate(payment),
    )
    if reg.payment_status == PaymentStatus.CONFIRMED:
        return ConfirmedSummary(
            payment_status="confirmed",
            access_code=user.access_code,
            bib_numbers=[p.bib_number for p in reg.participants if p.bib_number],
            qr_codes=[QrCodeOut.model_validate(q) for q in reg.qr_codes],
            packs_claimed=sum(1 for p in reg.participants if p.pack_claimed),
            **base,
        )
    if reg.payment_status == PaymentStatus.DECLINED:
        return DeclinedSummary(payment_status="declined", decline_reason=payment.decline_reason, **base)
    return PendingSummary(
        payment_status="pending",
        applicant=ApplicantDetails.model_validate(user),
        **base,
    )

def list_registration_summaries(session: Session, status: Optional[str] = None):
    q = select(models.Registration).order_by(models.Registration.created_at.desc(), models.Registration.id.desc())
    if status:
        q = q.where(models.Registration.payment_status == status)
    return [summarize_registration(r) for r in session.execute(q).scalars().all()]
