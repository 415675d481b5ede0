from __future__ import annotations

from datetime import datetime, date
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class PaymentStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"

    ALL = (PENDING, CONFIRMED, DECLINED)


class RegistrationType:
    INDIVIDUAL = "individual"
    COMMUNITY = "community"
    FAMILY = "family"

    ALL = (INDIVIDUAL, COMMUNITY, FAMILY)
    GROUP = (COMMUNITY, FAMILY)


class RaceCategory(Base):
    __tablename__ = "race_categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)

    early_bird_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    early_bird_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    tier1_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier1_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier1_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier2_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier2_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier2_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # tier3 has no upper bound
    tier3_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tier3_min: Mapped[int | None] = mapped_column(Integer, nullable=True)

    bundle_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bundle_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)

    early_bird_claims: Mapped[list["EarlyBirdClaim"]] = relationship(back_populates="category")


class JerseyOption(Base):
    __tablename__ = "jersey_options"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    size: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False, default="adult")  # adult | kids
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # extra-size surcharge
    is_extra_size: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    phone: Mapped[str] = mapped_column(String(30), nullable=False, default="")
    access_code: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    role: Mapped[str] = mapped_column(String(10), nullable=False, default="user")  # user | admin
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    current_address: Mapped[str | None] = mapped_column(String, nullable=True)
    nationality: Mapped[str | None] = mapped_column(String(100), nullable=True)
    emergency_phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    medical_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    medication_allergy: Mapped[str | None] = mapped_column(Text, nullable=True)
    id_card_photo: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    registrations: Mapped[list["Registration"]] = relationship(back_populates="user")


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    proof_of_payment: Mapped[str] = mapped_column(String, nullable=False)
    proof_sender_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=PaymentStatus.PENDING)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    # one payment transaction covers one or more registrations
    registrations: Mapped[list["Registration"]] = relationship(
        back_populates="payment", order_by="Registration.id"
    )


class Registration(Base):
    __tablename__ = "registrations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False)
    registration_type: Mapped[str] = mapped_column(String(20), nullable=False, default=RegistrationType.INDIVIDUAL)
    group_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_status: Mapped[str] = mapped_column(String(10), nullable=False, default=PaymentStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship(back_populates="registrations")
    payment: Mapped["Payment"] = relationship(back_populates="registrations")
    participants: Mapped[list["Participant"]] = relationship(
        back_populates="registration", order_by="Participant.id"
    )
    qr_codes: Mapped[list["QrCode"]] = relationship(back_populates="registration", order_by="QrCode.id")

    __table_args__ = (
        Index("ix_registrations_status", "payment_status"),
        Index("ix_registrations_payment", "payment_id"),
    )


class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_id: Mapped[int] = mapped_column(ForeignKey("registrations.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("race_categories.id"), nullable=False)
    jersey_id: Mapped[int] = mapped_column(ForeignKey("jersey_options.id"), nullable=False)
    # assigned once, at payment confirmation
    bib_number: Mapped[str | None] = mapped_column(String(20), nullable=True, unique=True)
    pack_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    early_bird: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    registration: Mapped["Registration"] = relationship(back_populates="participants")
    category: Mapped["RaceCategory"] = relationship()
    jersey: Mapped["JerseyOption"] = relationship()

    __table_args__ = (
        Index("ix_participants_registration_category", "registration_id", "category_id"),
    )


class QrCode(Base):
    __tablename__ = "qr_codes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_id: Mapped[int] = mapped_column(ForeignKey("registrations.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("race_categories.id"), nullable=False)
    qr_code_data: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    total_packs: Mapped[int] = mapped_column(Integer, nullable=False)
    max_scans: Mapped[int] = mapped_column(Integer, nullable=False)
    scans_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    registration: Mapped["Registration"] = relationship(back_populates="qr_codes")
    category: Mapped["RaceCategory"] = relationship()
    claims: Mapped[list["RacePackClaim"]] = relationship(back_populates="qr_code", order_by="RacePackClaim.id")

    __table_args__ = (
        CheckConstraint("scans_remaining >= 0", name="ck_qr_scans_non_negative"),
        CheckConstraint("scans_remaining <= max_scans", name="ck_qr_scans_within_max"),
    )


class EarlyBirdClaim(Base):
    __tablename__ = "early_bird_claims"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("race_categories.id"), nullable=False, index=True)
    registration_id: Mapped[int | None] = mapped_column(ForeignKey("registrations.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    category: Mapped["RaceCategory"] = relationship(back_populates="early_bird_claims")


class RacePackClaim(Base):
    __tablename__ = "race_pack_claims"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    qr_code_id: Mapped[int] = mapped_column(ForeignKey("qr_codes.id"), nullable=False, index=True)
    claimed_by: Mapped[str] = mapped_column(String(200), nullable=False, default="anonymous")
    claim_type: Mapped[str] = mapped_column(String(10), nullable=False)  # self | staff
    packs_claimed_count: Mapped[int] = mapped_column(Integer, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    qr_code: Mapped["QrCode"] = relationship(back_populates="claims")
    details: Mapped[list["ClaimDetail"]] = relationship(
        back_populates="claim", cascade="all, delete-orphan", order_by="ClaimDetail.id"
    )


class ClaimDetail(Base):
    __tablename__ = "claim_details"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    claim_id: Mapped[int] = mapped_column(ForeignKey("race_pack_claims.id"), nullable=False)
    # a participant can appear in one claim only
    participant_id: Mapped[int] = mapped_column(ForeignKey("participants.id"), nullable=False, unique=True)

    claim: Mapped["RacePackClaim"] = relationship(back_populates="details")
    participant: Mapped["Participant"] = relationship()


class BibSequence(Base):
    __tablename__ = "bib_sequences"
    prefix: Mapped[str] = mapped_column(String(5), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
