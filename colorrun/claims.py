from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from . import models
from .errors import AuthFailed, NotFound, ValidationFailed
from .models import PaymentStatus
from .schemas import ClaimIn
from .settings import settings

logger = logging.getLogger(__name__)

CLAIM_SELF = "self"
CLAIM_STAFF = "staff"


@dataclass
class ClaimResult:
    claim: models.RacePackClaim
    participant_ids: list[int]
    scans_remaining: int


def _password_matches(given: Optional[str], expected: str) -> bool:
    # an unset password never authorizes
    if not expected or not given:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def authorize_claim(claim_type: str, password: Optional[str], is_admin: bool = False) -> None:
    if claim_type == CLAIM_SELF:
        if not _password_matches(password, settings.CLAIM_PASSWORD):
            raise AuthFailed("Invalid claim password")
        return
    if claim_type == CLAIM_STAFF:
        if is_admin or _password_matches(password, settings.STAFF_CLAIM_PASSWORD):
            return
        raise AuthFailed("Invalid staff password")
    raise ValidationFailed("claimType must be 'self' or 'staff'")


def _lock_qr(session: Session, token: str) -> models.QrCode:
    qr = session.execute(
        select(models.QrCode).where(models.QrCode.qr_code_data == token).with_for_update()
    ).scalar_one_or_none()
    if qr is None:
        raise NotFound("QR code not found")
    return qr


def _select_explicit(session: Session, qr: models.QrCode, participant_ids: list[int]) -> list[models.Participant]:
    if len(set(participant_ids)) != len(participant_ids):
        raise ValidationFailed("Duplicate participant ids")
    participants = session.execute(
        select(models.Participant)
        .where(
            models.Participant.id.in_(participant_ids),
            models.Participant.registration_id == qr.registration_id,
            models.Participant.category_id == qr.category_id,
        )
        .order_by(models.Participant.id.asc())
        .with_for_update()
    ).scalars().all()
    if len(participants) != len(participant_ids):
        raise ValidationFailed("Some participants are invalid or already claimed")
    if any(p.pack_claimed for p in participants):
        raise ValidationFailed("Some participants are invalid or already claimed")
    if len(participants) > qr.scans_remaining:
        raise ValidationFailed(f"Not enough scans remaining. Only {qr.scans_remaining} left.")
    return list(participants)


def _select_implicit(session: Session, qr: models.QrCode, count: int) -> list[models.Participant]:
    if count < 1:
        raise ValidationFailed("packsClaimedCount must be at least 1")
    if count > qr.scans_remaining:
        raise ValidationFailed(f"Not enough scans remaining. Only {qr.scans_remaining} left.")
    participants = session.execute(
        select(models.Participant)
        .where(
            models.Participant.registration_id == qr.registration_id,
            models.Participant.category_id == qr.category_id,
            models.Participant.pack_claimed.is_(False),
        )
        .order_by(models.Participant.id.asc())
        .limit(count)
        .with_for_update()
    ).scalars().all()
    if len(participants) < count:
        raise ValidationFailed(f"Not enough unclaimed packs. Only {len(participants)} available.")
    return list(participants)


def process_claim(session: Session, payload: ClaimIn, is_admin: bool = False) -> ClaimResult:
    """Record a race-pack pickup against a QR code.

    Runs in one transaction with the QR row locked. Every validation failure
    happens before the first write, so a rejected claim changes nothing.
    """
    authorize_claim(payload.claim_type, payload.password, is_admin)

    try:
        qr = _lock_qr(session, payload.qr_code_data.strip())
        if qr.registration.payment_status == PaymentStatus.DECLINED:
            raise ValidationFailed("Registration payment was declined")
        if payload.participant_ids:
            participants = _select_explicit(session, qr, payload.participant_ids)
        else:
            count = payload.packs_claimed_count if payload.packs_claimed_count is not None else 1
            participants = _select_implicit(session, qr, count)

        n = len(participants)
        decremented = session.execute(
            update(models.QrCode)
            .where(models.QrCode.id == qr.id, models.QrCode.scans_remaining >= n)
            .values(scans_remaining=models.QrCode.scans_remaining - n)
            .execution_options(synchronize_session=False)
        ).rowcount
        if decremented != 1:
            raise ValidationFailed("Not enough scans remaining.")

        claim = models.RacePackClaim(
            qr_code_id=qr.id,
            claimed_by=(payload.claimed_by or "").strip() or "anonymous",
            claim_type=payload.claim_type,
            packs_claimed_count=n,
        )
        for p in participants:
            p.pack_claimed = True
            claim.details.append(models.ClaimDetail(participant_id=p.id))
        session.add(claim)
        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(qr)
    ids = [p.id for p in participants]
    logger.info("Race pack claim %s on QR %s: participants %s (%s)", claim.id, qr.id, ids, claim.claim_type)
    return ClaimResult(claim=claim, participant_ids=ids, scans_remaining=qr.scans_remaining)


def claim_history(session: Session) -> list[models.RacePackClaim]:
    return session.execute(
        select(models.RacePackClaim).order_by(models.RacePackClaim.claimed_at.desc(), models.RacePackClaim.id.desc())
    ).scalars().all()


def total_packs_claimed(session: Session) -> int:
    return session.execute(select(func.coalesce(func.sum(models.RacePackClaim.packs_claimed_count), 0))).scalar_one()
