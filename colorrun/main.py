import logging
from typing import Optional

from fastapi import FastAPI, Request, Depends, BackgroundTasks, UploadFile, File, Form, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, FileResponse, RedirectResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .settings import settings
from .db import init_db, get_session, session_factory
from . import models, services, storage, notify
from .auth import (
    ADMIN_COOKIE,
    USER_COOKIE,
    AuthCookieMiddleware,
    CurrentUser,
    admin_required,
    current_admin_optional,
    current_user_required,
    set_login_cookie,
    clear_login_cookies,
)
from .claims import process_claim, claim_history, total_packs_claimed
from .csv_export import router as csv_router
from .errors import ServiceError, ValidationFailed, NotFound, AuthFailed, RateLimited
from .models import PaymentStatus
from .payments import confirm_payment, decline_payment, resend_confirmation, PaymentChange
from .pricing import CartItem, quote_cart
from .qr import get_qr_code, make_qr_png_bytes, claim_url
from .ratelimit import login_limiter
from .registrations import create_registration
from .schemas import (
    AccessCodeLoginIn,
    AdminLoginIn,
    CartQuoteIn,
    CartQuoteOut,
    CategoryBrief,
    CategoryOut,
    CategoryUpdate,
    ClaimHistoryItem,
    ClaimHistoryOut,
    ClaimIn,
    ClaimOut,
    ClaimRecordOut,
    CountsOut,
    JerseyOut,
    LoginOut,
    ParticipantOut,
    PaymentSubmission,
    PurchasesOut,
    QrCodeOut,
    QrDetailOut,
    QrLookupOut,
    QrRegistrationOut,
    QuoteLineOut,
    RegistrationOut,
    RegistrationSummary,
    StatusChangeIn,
    StatusChangeOut,
    StatusCounts,
    SubmissionOut,
    UserOut,
    UserUpdateIn,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Color Run Registration")
app.add_middleware(AuthCookieMiddleware)
app.include_router(csv_router, prefix="/api")

@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    s = session_factory()()
    try:
        if settings.SEED_ON_STARTUP:
            from .seed import seed_reference_data
            seed_reference_data(s)
        # Ensure the single admin account exists
        services.ensure_admin_user(s)
    finally:
        s.close()

# ---------------------------
# Errors
# ---------------------------

@app.exception_handler(ServiceError)
def _service_error(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

def _first_error(errors) -> str:
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
    msg = err.get("msg", "Invalid request")
    return f"{'.'.join(loc)}: {msg}" if loc else msg

@app.exception_handler(RequestValidationError)
def _request_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _first_error(exc.errors())})

@app.exception_handler(Exception)
def _unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# ---------------------------
# Reference data
# ---------------------------

@app.get("/categories", response_model=list[CategoryOut])
def categories(session: Session = Depends(get_session)):
    return services.list_categories(session)

@app.get("/jerseys", response_model=list[JerseyOut])
def jerseys(session: Session = Depends(get_session)):
    return [JerseyOut.model_validate(j) for j in services.list_jerseys(session)]

@app.put("/admin/categories/{category_id}", response_model=CategoryOut, dependencies=[Depends(admin_required)])
def update_category(category_id: int, payload: CategoryUpdate, session: Session = Depends(get_session)):
    return services.update_category(session, category_id, payload)

# ---------------------------
# Cart & submission
# ---------------------------

@app.post("/cart/quote", response_model=CartQuoteOut)
def cart_quote(payload: CartQuoteIn, session: Session = Depends(get_session)):
    items = [
        CartItem(type=i.type or payload.registration_type, category_id=i.category_id, jersey_size=i.jersey_size, jerseys=dict(i.jerseys))
        for i in payload.items
    ]
    priced = quote_cart(session, items)
    return CartQuoteOut(
        lines=[
            QuoteLineOut(
                type=line.item.type,
                category_id=line.item.category_id,
                category_name=line.category_name,
                participants=line.participants,
                unit_price=line.unit_price,
                jersey_surcharge=line.jersey_surcharge,
                amount=line.amount,
                early_bird=line.early_bird,
            )
            for line in priced.lines
        ],
        total_amount=priced.total,
    )

def _submit(session: Session, payload: PaymentSubmission, proof_url: str, id_card_url: Optional[str], background_tasks: BackgroundTasks) -> SubmissionOut:
    result = create_registration(session, payload, proof_url, id_card_url)
    registration_ids = [r.id for r in result.registrations]
    background_tasks.add_task(
        notify.send_submission_ack, result.user.email, result.user.name, registration_ids, result.payment.transaction_id
    )
    return SubmissionOut(
        registration_id=registration_ids[0],
        registration_ids=registration_ids,
        payment_id=result.payment.id,
        transaction_id=result.payment.transaction_id,
        total_amount=result.payment.amount,
        qr_codes=[QrCodeOut.model_validate(q) for q in result.qr_codes],
    )

@app.post("/payments/base64", response_model=SubmissionOut)
def submit_payment_base64(payload: PaymentSubmission, background_tasks: BackgroundTasks, session: Session = Depends(get_session)):
    proof_url = payload.proof_url
    if payload.proof_image:
        proof_url = storage.save_base64(payload.proof_image, "proofs", payload.proof_file_name)
    if not proof_url:
        raise ValidationFailed("Payment proof is required")
    id_card_url = payload.id_card_url
    if payload.id_card_image:
        id_card_url = storage.save_base64(payload.id_card_image, "id-cards", payload.id_card_file_name)
    return _submit(session, payload, proof_url, id_card_url, background_tasks)

@app.post("/payments", response_model=SubmissionOut)
def submit_payment_multipart(
    background_tasks: BackgroundTasks,
    proof: UploadFile = File(...),
    idCard: Optional[UploadFile] = File(None),
    fullName: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    birthDate: Optional[str] = Form(None),
    gender: Optional[str] = Form(None),
    currentAddress: Optional[str] = Form(None),
    nationality: Optional[str] = Form(None),
    emergencyPhone: Optional[str] = Form(None),
    medicalHistory: Optional[str] = Form(None),
    medicationAllergy: Optional[str] = Form(None),
    registrationType: Optional[str] = Form(None),
    groupName: Optional[str] = Form(None),
    items: Optional[str] = Form(None),
    amount: Optional[str] = Form(None),
    proofSenderName: Optional[str] = Form(None),
    session: Session = Depends(get_session),
):
    form = {
        "fullName": fullName, "email": email, "phone": phone, "birthDate": birthDate, "gender": gender,
        "currentAddress": currentAddress, "nationality": nationality, "emergencyPhone": emergencyPhone,
        "medicalHistory": medicalHistory, "medicationAllergy": medicationAllergy,
        "registrationType": registrationType, "groupName": groupName, "items": items, "amount": amount,
        "proofSenderName": proofSenderName,
    }
    fields = {k: v for k, v in form.items() if v not in (None, "")}
    try:
        payload = PaymentSubmission.model_validate(fields)
    except ValidationError as e:
        raise ValidationFailed(_first_error(e.errors()))
    proof_url = storage.save_bytes(proof.file.read(), "proofs", proof.filename)
    id_card_url = None
    if idCard is not None and idCard.filename:
        id_card_url = storage.save_bytes(idCard.file.read(), "id-cards", idCard.filename)
    return _submit(session, payload, proof_url, id_card_url, background_tasks)

# ---------------------------
# Payment review (admin)
# ---------------------------

def _status_change_out(change: PaymentChange) -> StatusChangeOut:
    return StatusChangeOut(
        payment_id=change.payment.id,
        payment_status=change.payment.status,
        registrations=[RegistrationOut.model_validate(r) for r in change.registrations],
        email_sent=change.email_sent,
    )

@app.post("/payments/confirm", response_model=StatusChangeOut, dependencies=[Depends(admin_required)])
def payments_confirm(payload: StatusChangeIn, session: Session = Depends(get_session)):
    return _status_change_out(confirm_payment(session, payload.registration_id, payload.payment_id))

@app.post("/payments/decline", response_model=StatusChangeOut, dependencies=[Depends(admin_required)])
def payments_decline(payload: StatusChangeIn, session: Session = Depends(get_session)):
    return _status_change_out(decline_payment(session, payload.registration_id, payload.payment_id, payload.reason))

@app.post("/payments/sendQr", response_model=StatusChangeOut, dependencies=[Depends(admin_required)])
def payments_send_qr(payload: StatusChangeIn, session: Session = Depends(get_session)):
    return _status_change_out(resend_confirmation(session, payload.registration_id, payload.payment_id))

@app.get("/payments/counts", response_model=CountsOut, dependencies=[Depends(admin_required)])
def payments_counts(session: Session = Depends(get_session)):
    return CountsOut(counts=StatusCounts(**services.status_counts(session)))

@app.get("/admin/payments", response_model=list[RegistrationSummary], dependencies=[Depends(admin_required)])
def admin_payments(status: Optional[str] = Query(default=None), session: Session = Depends(get_session)):
    if status and status not in PaymentStatus.ALL:
        raise ValidationFailed(f"Unknown status: {status}")
    return services.list_registration_summaries(session, status)

def _upload_response(url: str):
    if url.startswith(storage.URL_PREFIX):
        path = storage.resolve_upload(url[len(storage.URL_PREFIX):])
        return FileResponse(path, media_type=storage.content_type_for(path))
    if url.startswith("http://") or url.startswith("https://"):
        return RedirectResponse(url=url, status_code=302)
    raise NotFound("File not found")

@app.get("/payments/proof/{payment_id}", dependencies=[Depends(admin_required)])
def payment_proof(payment_id: int, session: Session = Depends(get_session)):
    payment = services.get_payment(session, payment_id)
    return _upload_response(payment.proof_of_payment)

@app.get("/uploads/{path:path}", dependencies=[Depends(admin_required)])
def uploaded_file(path: str):
    return _upload_response(storage.URL_PREFIX + path)

# ---------------------------
# Race packs
# ---------------------------

def _token_from(raw: str) -> str:
    # scanners may hand over the whole claim URL
    return raw.strip().rstrip("/").rsplit("/", 1)[-1]

def _claim_record(claim: models.RacePackClaim) -> ClaimRecordOut:
    return ClaimRecordOut.model_validate(claim)

@app.post("/racePack/claim", response_model=ClaimOut)
def race_pack_claim(
    payload: ClaimIn,
    admin: Optional[CurrentUser] = Depends(current_admin_optional),
    session: Session = Depends(get_session),
):
    payload.qr_code_data = _token_from(payload.qr_code_data)
    result = process_claim(session, payload, is_admin=admin is not None)
    return ClaimOut(
        claim=_claim_record(result.claim),
        claimed_participant_ids=result.participant_ids,
        scans_remaining=result.scans_remaining,
    )

@app.get("/racePack/qr", response_model=QrLookupOut)
def race_pack_qr(qr: str = Query(..., min_length=1), session: Session = Depends(get_session)):
    code = get_qr_code(session, _token_from(qr))
    if not code:
        raise NotFound("QR code not found")
    reg = code.registration
    detail = QrDetailOut(
        **QrCodeOut.model_validate(code).model_dump(),
        category=CategoryBrief.model_validate(code.category),
        registration=QrRegistrationOut(
            id=reg.id,
            registration_type=reg.registration_type,
            group_name=reg.group_name,
            payment_status=reg.payment_status,
            user_name=reg.user.name,
            participants=[ParticipantOut.model_validate(p) for p in reg.participants if p.category_id == code.category_id],
        ),
    )
    return QrLookupOut(qr_code=detail)

@app.get("/racePack/qr/{token}.png")
def race_pack_qr_png(token: str, session: Session = Depends(get_session)):
    code = get_qr_code(session, token)
    if not code:
        raise NotFound("QR code not found")
    return Response(content=make_qr_png_bytes(claim_url(code.qr_code_data)), media_type="image/png")

@app.get("/racePack/claims", response_model=ClaimHistoryOut, dependencies=[Depends(admin_required)])
def race_pack_claims(session: Session = Depends(get_session)):
    items = []
    for c in claim_history(session):
        qr = c.qr_code
        items.append(
            ClaimHistoryItem(
                **_claim_record(c).model_dump(),
                qr_code_data=qr.qr_code_data,
                registration_id=qr.registration_id,
                category_name=qr.category.name,
                user_name=qr.registration.user.name,
                participants=[ParticipantOut.model_validate(d.participant) for d in c.details],
            )
        )
    return ClaimHistoryOut(claims=items, total=len(items), total_packs=total_packs_claimed(session))

# ---------------------------
# Auth
# ---------------------------

def _client_id(request: Request) -> str:
    if settings.TRUST_PROXY_HEADERS:
        # the proxy appends the address it saw, earlier entries are client supplied
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[-1].strip()
    return request.client.host if request.client else "unknown"

@app.post("/admin/login", response_model=LoginOut)
def admin_login(payload: AdminLoginIn, request: Request, session: Session = Depends(get_session)):
    client = _client_id(request)
    status = login_limiter.check(client)
    if not status.allowed:
        wait = login_limiter.remaining_lock_time(status.locked_until)
        raise RateLimited(f"Too many failed login attempts. Try again in {wait}.")

    admin = services.authenticate_admin(session, payload.username.strip(), payload.password)
    if not admin:
        login_limiter.record_failure(client)
        logger.warning("Failed admin login from %s", client)
        raise AuthFailed("Invalid username or password")

    login_limiter.record_success(client)
    set_login_cookie(request, ADMIN_COOKIE, user_id=admin.id, name=admin.name, role=admin.role)
    return LoginOut(name=admin.name, role=admin.role)

@app.get("/admin/verify", response_model=LoginOut)
def admin_verify(admin: CurrentUser = Depends(admin_required)):
    return LoginOut(name=admin.name, role=admin.role)

@app.post("/auth/login", response_model=LoginOut)
def access_code_login(payload: AccessCodeLoginIn, request: Request, session: Session = Depends(get_session)):
    user = services.get_user_by_access_code(session, payload.access_code)
    if not user:
        raise AuthFailed("Invalid access code")
    set_login_cookie(request, USER_COOKIE, user_id=user.id, name=user.name, role=user.role)
    return LoginOut(name=user.name, role=user.role)

@app.post("/auth/logout")
def logout(request: Request):
    clear_login_cookies(request)
    return {"success": True}

@app.get("/user", response_model=UserOut)
def get_user(user: models.User = Depends(current_user_required)):
    return UserOut.model_validate(user)

@app.put("/user", response_model=UserOut)
def put_user(payload: UserUpdateIn, user: models.User = Depends(current_user_required), session: Session = Depends(get_session)):
    return UserOut.model_validate(services.update_user_contact(session, user, payload))

@app.get("/profile/purchases", response_model=PurchasesOut)
def purchases(user: models.User = Depends(current_user_required), session: Session = Depends(get_session)):
    regs = services.list_user_registrations(session, user)
    return PurchasesOut(registrations=[RegistrationOut.model_validate(r) for r in regs])
