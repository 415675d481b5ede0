from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from . import models
from .errors import ValidationFailed, NotFound
from .models import RegistrationType
from .settings import settings

# ---------------------------
# Unit price
# ---------------------------

def _in_range(total: int, lo: Optional[int], hi: Optional[int]) -> bool:
    if lo is None:
        return False
    if total < lo:
        return False
    return hi is None or total <= hi

def resolve_unit_price(
    category: models.RaceCategory,
    registration_type: str,
    total_participants: int = 0,
    early_bird_available: bool = False,
) -> int:
    """Price per participant for one cart entry.

    ``total_participants`` is the community head count for this category across
    the whole cart, current entry included. No minimum is applied here.
    """
    if registration_type == RegistrationType.FAMILY and category.bundle_price:
        return category.bundle_price

    if registration_type == RegistrationType.INDIVIDUAL:
        if early_bird_available and category.early_bird_price:
            return category.early_bird_price
        return category.base_price

    if category.tier3_price and category.tier3_min is not None and total_participants >= category.tier3_min:
        return category.tier3_price
    if category.tier2_price and _in_range(total_participants, category.tier2_min, category.tier2_max):
        return category.tier2_price
    if category.tier1_price and category.tier1_max is not None and _in_range(total_participants, category.tier1_min, category.tier1_max):
        return category.tier1_price
    return category.base_price

def validate_tiers(category: models.RaceCategory) -> None:
    """Tiers must be ascending and must not overlap; tier3 is open-ended."""
    tiers = []
    if category.tier1_price is not None:
        tiers.append(("tier1", category.tier1_min, category.tier1_max))
    if category.tier2_price is not None:
        tiers.append(("tier2", category.tier2_min, category.tier2_max))
    if category.tier3_price is not None:
        tiers.append(("tier3", category.tier3_min, None))

    prev_max: Optional[int] = None
    prev_name = None
    for i, (name, lo, hi) in enumerate(tiers):
        if lo is None:
            raise ValidationFailed(f"{name} requires a minimum participant count")
        if hi is not None and hi < lo:
            raise ValidationFailed(f"{name} maximum is below its minimum")
        if hi is None and i < len(tiers) - 1:
            raise ValidationFailed(f"{name} must have a maximum when a higher tier exists")
        if prev_name is not None and lo <= prev_max:
            raise ValidationFailed(f"{name} overlaps {prev_name}")
        prev_max, prev_name = hi, name

# ---------------------------
# Early bird capacity
# ---------------------------

def early_bird_claims_count(session: Session, category_id: int) -> int:
    return session.execute(
        select(func.count(models.EarlyBirdClaim.id)).where(models.EarlyBirdClaim.category_id == category_id)
    ).scalar_one()

def early_bird_remaining(session: Session, category: models.RaceCategory) -> int:
    capacity = category.early_bird_capacity or 0
    return max(0, capacity - early_bird_claims_count(session, category.id))

def lock_early_bird_remaining(session: Session, category_ids: set[int]) -> dict[int, int]:
    """Lock the category rows and return the remaining early-bird slots.

    The lock is held until the caller's transaction ends, so the count and the
    claim inserts that follow are not interleaved with another submission.
    """
    remaining: dict[int, int] = {}
    for category_id in sorted(category_ids):
        category = session.execute(
            select(models.RaceCategory).where(models.RaceCategory.id == category_id).with_for_update()
        ).scalar_one_or_none()
        if category is None:
            continue
        remaining[category_id] = early_bird_remaining(session, category)
    return remaining

# ---------------------------
# Cart pricing
# ---------------------------

@dataclass
class CartItem:
    type: str
    category_id: int
    jersey_size: Optional[str] = None
    jerseys: dict[str, int] = field(default_factory=dict)

    @property
    def participants(self) -> int:
        if self.type == RegistrationType.INDIVIDUAL:
            return 1
        return sum(c for c in self.jerseys.values() if c > 0)

@dataclass
class PricedLine:
    item: CartItem
    category_name: str
    unit_price: int
    participants: int
    jersey_surcharge: int
    amount: int
    early_bird: bool = False
    # (jersey_id, count) rows to expand into participants
    jersey_rows: list[tuple[int, int]] = field(default_factory=list)

@dataclass
class PricedCart:
    lines: list[PricedLine]

    @property
    def total(self) -> int:
        return sum(line.amount for line in self.lines)

    def total_for_type(self, registration_type: str) -> int:
        return sum(line.amount for line in self.lines if line.item.type == registration_type)

def price_cart(
    categories: dict[int, models.RaceCategory],
    jerseys: list[models.JerseyOption],
    items: list[CartItem],
    early_bird_slots: dict[int, int],
    community_minimum: int = 0,
) -> PricedCart:
    if not items:
        raise ValidationFailed("Cart is empty")
    if not jerseys:
        raise ValidationFailed("No jersey options configured")

    by_size = {j.size: j for j in jerseys}
    default_jersey = jerseys[0]

    community_totals: dict[int, int] = {}
    for item in items:
        if item.type not in RegistrationType.ALL:
            raise ValidationFailed(f"Unknown registration type: {item.type}")
        if item.category_id not in categories:
            raise NotFound(f"Race category {item.category_id} not found")
        if item.type in RegistrationType.GROUP and item.participants <= 0:
            raise ValidationFailed("Group entries need at least one participant")
        if item.type == RegistrationType.COMMUNITY:
            community_totals[item.category_id] = community_totals.get(item.category_id, 0) + item.participants

    community_total = sum(community_totals.values())
    if community_totals and community_total < community_minimum:
        raise ValidationFailed(
            f"Community registration requires at least {community_minimum} participants (got {community_total})"
        )

    slots = dict(early_bird_slots)
    lines: list[PricedLine] = []
    for item in items:
        category = categories[item.category_id]

        if item.type == RegistrationType.INDIVIDUAL:
            if item.jersey_size:
                jersey = by_size.get(item.jersey_size)
                if jersey is None:
                    raise ValidationFailed(f"Unknown jersey size: {item.jersey_size}")
            else:
                jersey = default_jersey
            jersey_rows = [(jersey.id, 1)]
            surcharge = jersey.price or 0
            available = slots.get(category.id, 0) > 0 and bool(category.early_bird_price)
            unit = resolve_unit_price(category, item.type, 1, available)
            if available:
                slots[category.id] -= 1
        else:
            jersey_rows = []
            surcharge = 0
            for size, count in item.jerseys.items():
                if count <= 0:
                    continue
                jersey = by_size.get(size)
                if jersey is None:
                    raise ValidationFailed(f"Unknown jersey size: {size}")
                jersey_rows.append((jersey.id, count))
                surcharge += (jersey.price or 0) * count
            available = False
            unit = resolve_unit_price(category, item.type, community_totals.get(category.id, 0))

        lines.append(
            PricedLine(
                item=item,
                category_name=category.name,
                unit_price=unit,
                participants=item.participants,
                jersey_surcharge=surcharge,
                amount=unit * item.participants + surcharge,
                early_bird=available,
                jersey_rows=jersey_rows,
            )
        )
    return PricedCart(lines=lines)

def load_pricing_context(session: Session, items: list[CartItem]):
    ids = {item.category_id for item in items}
    categories = {
        c.id: c
        for c in session.execute(select(models.RaceCategory).where(models.RaceCategory.id.in_(ids))).scalars().all()
    }
    jerseys = session.execute(select(models.JerseyOption).order_by(models.JerseyOption.id.asc())).scalars().all()
    return categories, list(jerseys)

def quote_cart(session: Session, items: list[CartItem]) -> PricedCart:
    """Read-only pricing of a cart, as the checkout page shows it."""
    categories, jerseys = load_pricing_context(session, items)
    slots = {cid: early_bird_remaining(session, c) for cid, c in categories.items()}
    return price_cart(categories, jerseys, items, slots, settings.COMMUNITY_MIN_PARTICIPANTS)
