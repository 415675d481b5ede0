from __future__ import annotations

import logging
import re

from sqlalchemy import update, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger(__name__)

def bib_prefix(category_name: str | None) -> str:
    name = re.sub(r"\s+", "", (category_name or "").lower())
    if "3k" in name:
        return "3"
    if "5k" in name:
        return "5"
    if "10k" in name:
        return "10"
    return "0"

def format_bib(prefix: str, seq: int) -> str:
    return f"{prefix}{seq:04d}"

def reserve_sequence(session: Session, prefix: str, count: int) -> int:
    """Atomically reserve ``count`` numbers for ``prefix``; returns the first one."""
    stmt = (
        update(models.BibSequence)
        .where(models.BibSequence.prefix == prefix)
        .values(last_value=models.BibSequence.last_value + count)
        .returning(models.BibSequence.last_value)
    )
    last = session.execute(stmt).scalar_one_or_none()
    if last is None:
        try:
            with session.begin_nested():
                session.execute(insert(models.BibSequence).values(prefix=prefix, last_value=count))
            last = count
        except IntegrityError:
            # another transaction created the row first
            last = session.execute(stmt).scalar_one()
    return last - count + 1

def assign_bib_numbers(session: Session, participants: list[models.Participant]) -> list[models.Participant]:
    """Give a bib to every participant that has none, in participant-id order.

    Existing bib numbers are left untouched. Returns the participants that were
    numbered by this call.
    """
    pending = sorted((p for p in participants if not p.bib_number), key=lambda p: p.id)
    by_prefix: dict[str, list[models.Participant]] = {}
    for p in pending:
        by_prefix.setdefault(bib_prefix(p.category.name if p.category else None), []).append(p)

    for prefix, group in by_prefix.items():
        first = reserve_sequence(session, prefix, len(group))
        for offset, p in enumerate(group):
            p.bib_number = format_bib(prefix, first + offset)
        logger.info("Assigned %d bib numbers with prefix %s starting at %s", len(group), prefix, format_bib(prefix, first))
    session.flush()
    return pending
