from __future__ import annotations

import secrets
from collections import Counter
from io import BytesIO

import qrcode
from PIL import Image
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .settings import settings

def make_token() -> str:
    return secrets.token_urlsafe(18)

def claim_url(token: str) -> str:
    return f"{settings.APP_URL.rstrip('/')}/claim/{token}"

def make_qr_png_bytes(text: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(text)
    qr.make(fit=True)
    img: Image.Image = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    bio = BytesIO()
    img.save(bio, format="PNG")
    return bio.getvalue()

def _category_counts(registration: models.Registration) -> Counter:
    return Counter(p.category_id for p in registration.participants)

def issue_qr_codes(session: Session, registration: models.Registration, category_ids: set[int] | None = None) -> list[models.QrCode]:
    """Create one QR code per category in the registration.

    No deduplication happens here; calling this twice for the same category
    yields two codes.
    """
    created: list[models.QrCode] = []
    for category_id, count in sorted(_category_counts(registration).items()):
        if category_ids is not None and category_id not in category_ids:
            continue
        qr = models.QrCode(
            registration_id=registration.id,
            category_id=category_id,
            qr_code_data=make_token(),
            total_packs=count,
            max_scans=count,
            scans_remaining=count,
        )
        session.add(qr)
        created.append(qr)
    session.flush()
    return created

def ensure_qr_codes(session: Session, registration: models.Registration) -> list[models.QrCode]:
    """Issue codes only for categories of the registration that have none yet."""
    have = set(
        session.execute(
            select(models.QrCode.category_id).where(models.QrCode.registration_id == registration.id)
        ).scalars().all()
    )
    missing = set(_category_counts(registration)) - have
    if not missing:
        return []
    return issue_qr_codes(session, registration, missing)

def get_qr_code(session: Session, token: str) -> models.QrCode | None:
    return session.execute(
        select(models.QrCode).where(models.QrCode.qr_code_data == token)
    ).scalar_one_or_none()
