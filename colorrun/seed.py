from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import models
from .pricing import validate_tiers

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    dict(
        name="3km", base_price=150000,
        early_bird_price=130000, early_bird_capacity=20,
        tier1_price=140000, tier1_min=10, tier1_max=29,
        tier2_price=135000, tier2_min=30, tier2_max=None,
        bundle_price=125000, bundle_size=4,
    ),
    dict(
        name="5km", base_price=200000,
        early_bird_price=175000, early_bird_capacity=20,
        tier1_price=190000, tier1_min=10, tier1_max=29,
        tier2_price=180000, tier2_min=30, tier2_max=59,
        tier3_price=170000, tier3_min=60,
    ),
    dict(
        name="10km", base_price=250000,
        early_bird_price=220000, early_bird_capacity=50,
        tier1_price=240000, tier1_min=10, tier1_max=29,
        tier2_price=230000, tier2_min=30, tier2_max=None,
    ),
]

DEFAULT_JERSEYS = [
    ("XS", "adult", 0, False),
    ("S", "adult", 0, False),
    ("M", "adult", 0, False),
    ("L", "adult", 0, False),
    ("XL", "adult", 0, False),
    ("XXL", "adult", 25000, True),
    ("3XL", "adult", 25000, True),
    ("KIDS-S", "kids", 0, False),
    ("KIDS-M", "kids", 0, False),
    ("KIDS-L", "kids", 0, False),
]

def seed_reference_data(session: Session) -> None:
    """Insert missing categories and jersey options. Existing rows are kept as edited."""
    existing = set(session.execute(select(models.RaceCategory.name)).scalars().all())
    added = 0
    for data in DEFAULT_CATEGORIES:
        if data["name"] in existing:
            continue
        category = models.RaceCategory(**data)
        validate_tiers(category)
        session.add(category)
        added += 1

    sizes = set(session.execute(select(models.JerseyOption.size)).scalars().all())
    for size, kind, price, extra in DEFAULT_JERSEYS:
        if size in sizes:
            continue
        session.add(models.JerseyOption(size=size, type=kind, price=price, is_extra_size=extra))
        added += 1

    session.commit()
    if added:
        logger.info("Seeded %d reference rows", added)
