from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends
from starlette.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import get_session
from . import models
from .auth import admin_required

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/participants.csv", dependencies=[Depends(admin_required)])
def participants_csv(status: str | None = None, session: Session = Depends(get_session)):
    q = (
        select(models.Participant)
        .join(models.Registration)
        .order_by(models.Participant.registration_id.asc(), models.Participant.id.asc())
    )
    if status:
        q = q.where(models.Registration.payment_status == status)
    rows = session.execute(q).scalars().all()
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow([
        "participant_id", "registration_id", "registration_type", "group_name", "payment_status",
        "name", "email", "phone", "category", "jersey_size", "bib_number", "early_bird", "pack_claimed",
    ])
    for p in rows:
        reg = p.registration
        w.writerow([
            p.id,
            reg.id,
            reg.registration_type,
            reg.group_name or "",
            reg.payment_status,
            reg.user.name,
            reg.user.email,
            reg.user.phone,
            p.category.name,
            p.jersey.size,
            p.bib_number or "",
            int(p.early_bird),
            int(p.pack_claimed),
        ])
    return _csv_response("participants.csv", buf.getvalue())

@router.get("/claims.csv", dependencies=[Depends(admin_required)])
def claims_csv(session: Session = Depends(get_session)):
    rows = session.execute(select(models.RacePackClaim).order_by(models.RacePackClaim.claimed_at.asc())).scalars().all()
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["claim_id", "claimed_at", "claim_type", "claimed_by", "registration_id", "category", "packs", "bib_numbers"])
    for c in rows:
        w.writerow([
            c.id,
            c.claimed_at.isoformat() if c.claimed_at else "",
            c.claim_type,
            c.claimed_by,
            c.qr_code.registration_id,
            c.qr_code.category.name,
            c.packs_claimed_count,
            " ".join(d.participant.bib_number or "" for d in c.details).strip(),
        ])
    return _csv_response("claims.csv", buf.getvalue())
