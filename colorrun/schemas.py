from __future__ import annotations

import json
from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """JSON bodies use camelCase keys; Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------
# Reference data
# ---------------------------

class CategoryOut(ApiModel):
    id: int
    name: str
    base_price: int
    early_bird_price: Optional[int] = None
    early_bird_capacity: Optional[int] = None
    early_bird_remaining: int = 0
    tier1_price: Optional[int] = None
    tier1_min: Optional[int] = None
    tier1_max: Optional[int] = None
    tier2_price: Optional[int] = None
    tier2_min: Optional[int] = None
    tier2_max: Optional[int] = None
    tier3_price: Optional[int] = None
    tier3_min: Optional[int] = None
    bundle_price: Optional[int] = None
    bundle_size: Optional[int] = None
    image_url: Optional[str] = None

class CategoryUpdate(ApiModel):
    base_price: Optional[int] = Field(default=None, ge=0)
    early_bird_price: Optional[int] = Field(default=None, ge=0)
    early_bird_capacity: Optional[int] = Field(default=None, ge=0)
    tier1_price: Optional[int] = Field(default=None, ge=0)
    tier1_min: Optional[int] = Field(default=None, ge=1)
    tier1_max: Optional[int] = Field(default=None, ge=1)
    tier2_price: Optional[int] = Field(default=None, ge=0)
    tier2_min: Optional[int] = Field(default=None, ge=1)
    tier2_max: Optional[int] = Field(default=None, ge=1)
    tier3_price: Optional[int] = Field(default=None, ge=0)
    tier3_min: Optional[int] = Field(default=None, ge=1)
    bundle_price: Optional[int] = Field(default=None, ge=0)
    bundle_size: Optional[int] = Field(default=None, ge=1)
    image_url: Optional[str] = None

class CategoryBrief(ApiModel):
    id: int
    name: str

class JerseyOut(ApiModel):
    id: int
    size: str
    type: str
    price: int
    is_extra_size: bool


# ---------------------------
# Cart & submission
# ---------------------------

class CartItemIn(ApiModel):
    type: Optional[str] = None  # individual | community | family
    category_id: int
    jersey_size: Optional[str] = None
    jerseys: dict[str, int] = Field(default_factory=dict)

def parse_items_json(v):
    """Multipart forms send the cart as a JSON string."""
    if isinstance(v, str):
        try:
            return json.loads(v) if v.strip() else []
        except json.JSONDecodeError:
            raise ValueError("invalid items JSON")
    return v

class CartQuoteIn(ApiModel):
    registration_type: str = "individual"
    items: list[CartItemIn]

    @field_validator("items", mode="before")
    @classmethod
    def parse_items(cls, v):
        return parse_items_json(v)

class QuoteLineOut(ApiModel):
    type: str
    category_id: int
    category_name: str
    participants: int
    unit_price: int
    jersey_surcharge: int
    amount: int
    early_bird: bool

class CartQuoteOut(ApiModel):
    lines: list[QuoteLineOut]
    total_amount: int

class PaymentSubmission(ApiModel):
    full_name: str = Field(min_length=1)
    email: EmailStr
    phone: str = ""
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    current_address: Optional[str] = None
    nationality: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_history: Optional[str] = None
    medication_allergy: Optional[str] = None

    registration_type: str = "individual"
    group_name: Optional[str] = None
    items: list[CartItemIn] = Field(min_length=1)
    amount: Optional[int] = Field(default=None, ge=0)
    proof_sender_name: Optional[str] = None

    # pre-uploaded file references, or inline base64 images
    proof_url: Optional[str] = None
    id_card_url: Optional[str] = None
    proof_image: Optional[str] = None
    proof_file_name: Optional[str] = None
    id_card_image: Optional[str] = None
    id_card_file_name: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def parse_items(cls, v):
        return parse_items_json(v)

    @field_validator("birth_date", mode="before")
    @classmethod
    def blank_date(cls, v):
        return None if v == "" else v

class QrCodeOut(ApiModel):
    id: int
    registration_id: int
    category_id: int
    qr_code_data: str
    total_packs: int
    max_scans: int
    scans_remaining: int

class SubmissionOut(ApiModel):
    success: bool = True
    registration_id: int
    registration_ids: list[int]
    payment_id: int
    transaction_id: str
    total_amount: int
    qr_codes: list[QrCodeOut]


# ---------------------------
# Registrations
# ---------------------------

class ParticipantOut(ApiModel):
    id: int
    registration_id: int
    category: CategoryBrief
    jersey: JerseyOut
    bib_number: Optional[str] = None
    pack_claimed: bool

class RegistrationOut(ApiModel):
    id: int
    registration_type: str
    group_name: Optional[str] = None
    total_amount: int
    payment_status: str
    created_at: datetime
    participants: list[ParticipantOut] = Field(default_factory=list)
    qr_codes: list[QrCodeOut] = Field(default_factory=list)

class UserOut(ApiModel):
    id: int
    name: str
    email: str
    phone: str
    access_code: Optional[str] = None
    role: str
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    current_address: Optional[str] = None
    nationality: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_history: Optional[str] = None
    medication_allergy: Optional[str] = None
    id_card_photo: Optional[str] = None

class UserUpdateIn(ApiModel):
    email: EmailStr
    phone: str = Field(min_length=1)

class PurchasesOut(ApiModel):
    registrations: list[RegistrationOut]


# ---------------------------
# Payment review
# ---------------------------

class StatusChangeIn(ApiModel):
    registration_id: Optional[int] = None
    payment_id: Optional[int] = None
    id: Optional[int] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def resolve_target(self):
        if self.registration_id is None and self.id is not None:
            self.registration_id = self.id
        if self.registration_id is None and self.payment_id is None:
            raise ValueError("Missing registrationId")
        return self

class StatusChangeOut(ApiModel):
    success: bool = True
    payment_id: int
    payment_status: str
    registrations: list[RegistrationOut]
    email_sent: bool

class PaymentInfo(ApiModel):
    id: int
    transaction_id: str
    amount: int
    proof_of_payment: str
    proof_sender_name: Optional[str] = None
    status: str

class _SummaryBase(ApiModel):
    registration_id: int
    registration_ids: list[int]
    user_name: str
    email: str
    phone: str
    registration_type: str
    group_name: Optional[str] = None
    total_amount: int
    created_at: datetime
    participant_count: int
    category_counts: dict[str, int]
    jersey_sizes: dict[str, int]
    payment: PaymentInfo

class ApplicantDetails(ApiModel):
    birth_date: Optional[date] = None
    gender: Optional[str] = None
    current_address: Optional[str] = None
    nationality: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_history: Optional[str] = None
    medication_allergy: Optional[str] = None
    id_card_photo: Optional[str] = None

class PendingSummary(_SummaryBase):
    payment_status: Literal["pending"]
    applicant: ApplicantDetails

class ConfirmedSummary(_SummaryBase):
    payment_status: Literal["confirmed"]
    access_code: Optional[str] = None
    bib_numbers: list[str]
    qr_codes: list[QrCodeOut]
    packs_claimed: int

class DeclinedSummary(_SummaryBase):
    payment_status: Literal["declined"]
    decline_reason: Optional[str] = None

RegistrationSummary = Annotated[
    Union[PendingSummary, ConfirmedSummary, DeclinedSummary],
    Field(discriminator="payment_status"),
]

class StatusCounts(ApiModel):
    pending: int
    confirmed: int
    declined: int

class CountsOut(ApiModel):
    counts: StatusCounts


# ---------------------------
# Race pack claims
# ---------------------------

class ClaimIn(ApiModel):
    qr_code_data: str = Field(min_length=1)
    participant_ids: Optional[list[int]] = None
    packs_claimed_count: Optional[int] = None
    claimed_by: Optional[str] = None
    claim_type: str = ""
    password: Optional[str] = None

class ClaimRecordOut(ApiModel):
    id: int
    qr_code_id: int
    claimed_by: str
    claim_type: str
    packs_claimed_count: int
    claimed_at: datetime

class ClaimOut(ApiModel):
    success: bool = True
    claim: ClaimRecordOut
    claimed_participant_ids: list[int]
    scans_remaining: int

class QrRegistrationOut(ApiModel):
    id: int
    registration_type: str
    group_name: Optional[str] = None
    payment_status: str
    user_name: str
    participants: list[ParticipantOut]

class QrDetailOut(QrCodeOut):
    category: CategoryBrief
    registration: QrRegistrationOut

class QrLookupOut(ApiModel):
    qr_code: QrDetailOut

class ClaimHistoryItem(ClaimRecordOut):
    qr_code_data: str
    registration_id: int
    category_name: str
    user_name: str
    participants: list[ParticipantOut]

class ClaimHistoryOut(ApiModel):
    success: bool = True
    claims: list[ClaimHistoryItem]
    total: int
    total_packs: int


# ---------------------------
# Auth
# ---------------------------

class AdminLoginIn(ApiModel):
    username: str = ""
    password: str = ""

class AccessCodeLoginIn(ApiModel):
    access_code: str = ""

class LoginOut(ApiModel):
    success: bool = True
    name: str
    role: str
