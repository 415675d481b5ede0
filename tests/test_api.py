import base64
import json
import uuid
from types import SimpleNamespace

from sqlalchemy import select, func

from colorrun import models

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _ids(client):
    return {c["name"]: c["id"] for c in client.get("/categories").json()}


def _submit(client, **overrides):
    ids = _ids(client)
    body = {
        "fullName": "Rina Runner",
        "email": "rina@example.com",
        "phone": "08123456789",
        "registrationType": "individual",
        "items": [{"categoryId": ids["10km"], "jerseySize": "M"}],
        "proofImage": "data:image/png;base64," + base64.b64encode(PNG).decode(),
        "proofSenderName": "Rina",
    }
    body.update(overrides)
    return client.post("/payments/base64", json=body)


def test_categories_report_remaining_early_bird(client):
    r = client.get("/categories")
    assert r.status_code == 200
    by_name = {c["name"]: c for c in r.json()}
    assert by_name["3km"]["earlyBirdRemaining"] == 20
    assert by_name["5km"]["tier2Price"] == 180000


def test_jerseys_listed(client):
    sizes = [j["size"] for j in client.get("/jerseys").json()]
    assert "XXL" in sizes and "KIDS-S" in sizes


def test_cart_quote(client):
    ids = _ids(client)
    r = client.post(
        "/cart/quote",
        json={
            "registrationType": "community",
            "items": [
                {"categoryId": ids["5km"], "jerseys": {"M": 25}},
                {"categoryId": ids["5km"], "jerseys": {"L": 10}},
            ],
        },
    )
    assert r.status_code == 200, r.text
    data = r.json()
    assert [line["unitPrice"] for line in data["lines"]] == [180000, 180000]
    assert data["totalAmount"] == 35 * 180000


def test_base64_submission_stores_proof_and_acknowledges(client, mailer, db_session):
    r = _submit(client)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["success"] is True
    assert data["registrationIds"] == [data["registrationId"]]
    assert data["totalAmount"] == 220000
    assert len(data["qrCodes"]) == 1

    payment = db_session.get(models.Payment, data["paymentId"])
    assert payment.proof_of_payment.startswith("/uploads/proofs/")
    assert mailer.sent and mailer.sent[0].subject.startswith("Registration received")


def test_multipart_submission(client, db_session):
    ids = _ids(client)
    r = client.post(
        "/payments",
        data={
            "fullName": "Budi Santoso",
            "email": "budi@example.com",
            "phone": "0811111111",
            "registrationType": "family",
            "groupName": "Keluarga Santoso",
            "items": json.dumps([{"categoryId": ids["3km"], "jerseys": {"L": 2, "KIDS-M": 2}}]),
        },
        files={"proof": ("proof.jpg", PNG, "image/jpeg"), "idCard": ("ktp.png", PNG, "image/png")},
    )
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["totalAmount"] == 4 * 125000
    user = db_session.execute(select(models.User).where(models.User.email == "budi@example.com")).scalar_one()
    assert user.id_card_photo.startswith("/uploads/id-cards/")


def test_invalid_body_is_400_with_error_message(client):
    r = client.post("/payments/base64", json={"fullName": "X", "email": "not-an-email", "items": []})
    assert r.status_code == 400
    assert "error" in r.json()


def test_missing_proof_is_400(client):
    r = _submit(client, proofImage=None)
    assert r.status_code == 400
    assert r.json() == {"error": "Payment proof is required"}


def test_admin_endpoints_require_login(client):
    assert client.get("/payments/counts").status_code == 401
    assert client.post("/payments/confirm", json={"registrationId": 1}).status_code == 401
    assert client.get("/api/participants.csv").status_code == 401


def test_admin_login_locks_after_three_failures(client):
    for _ in range(3):
        assert client.post("/admin/login", json={"username": "admin", "password": "nope"}).status_code == 401
    r = client.post("/admin/login", json={"username": "admin", "password": "admin-pass"})
    assert r.status_code == 429
    assert "Try again" in r.json()["error"]


def test_bearer_access_code_authorizes_admin(client, db_session):
    admin = db_session.execute(select(models.User).where(models.User.role == "admin")).scalar_one()
    r = client.get("/admin/verify", headers={"Authorization": f"Bearer {admin.access_code}"})
    assert r.status_code == 200
    assert r.json()["role"] == "admin"


def test_review_flow(admin_client, mailer):
    reg_id = _submit(admin_client).json()["registrationId"]

    counts = admin_client.get("/payments/counts").json()["counts"]
    assert counts == {"pending": 1, "confirmed": 0, "declined": 0}

    pending = admin_client.get("/admin/payments", params={"status": "pending"}).json()
    assert pending[0]["paymentStatus"] == "pending"
    assert "applicant" in pending[0]

    r = admin_client.post("/payments/confirm", json={"registrationId": reg_id})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["paymentStatus"] == "confirmed"
    assert body["emailSent"] is True
    assert body["registrations"][0]["participants"][0]["bibNumber"] == "100001"

    confirmed = admin_client.get("/admin/payments", params={"status": "confirmed"}).json()
    assert confirmed[0]["accessCode"] == "rina_runner"
    assert confirmed[0]["bibNumbers"] == ["100001"]

    r = admin_client.post("/payments/decline", json={"id": reg_id, "reason": "Blurry proof"})
    assert r.json()["paymentStatus"] == "declined"
    declined = admin_client.get("/admin/payments", params={"status": "declined"}).json()
    assert declined[0]["declineReason"] == "Blurry proof"

    assert admin_client.get("/admin/payments", params={"status": "lost"}).status_code == 400


def test_payment_proof_served_to_admin(admin_client):
    payment_id = _submit(admin_client).json()["paymentId"]
    r = admin_client.get(f"/payments/proof/{payment_id}")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content == PNG


def test_upload_path_traversal_rejected(admin_client):
    assert admin_client.get("/uploads/..%2F..%2Fetc%2Fpasswd").status_code == 404


def test_access_code_login_and_profile(admin_client, mailer):
    data = _submit(admin_client).json()
    admin_client.post("/payments/confirm", json={"paymentId": data["paymentId"]})
    admin_client.post("/auth/logout")

    assert admin_client.get("/user").status_code == 401
    assert admin_client.post("/auth/login", json={"accessCode": "wrong"}).status_code == 401
    r = admin_client.post("/auth/login", json={"accessCode": "rina_runner"})
    assert r.status_code == 200

    me = admin_client.get("/user").json()
    assert me["email"] == "rina@example.com"
    purchases = admin_client.get("/profile/purchases").json()["registrations"]
    assert purchases[0]["paymentStatus"] == "confirmed"

    r = admin_client.put("/user", json={"email": "rina.new@example.com", "phone": "0899"})
    assert r.status_code == 200
    assert r.json()["email"] == "rina.new@example.com"


def test_claim_flow_over_http(admin_client):
    token = _submit(admin_client).json()["qrCodes"][0]["qrCodeData"]

    lookup = admin_client.get("/racePack/qr", params={"qr": f"http://localhost:8000/claim/{token}"})
    assert lookup.status_code == 200
    qr = lookup.json()["qrCode"]
    assert qr["category"]["name"] == "10km"
    participant_id = qr["registration"]["participants"][0]["id"]

    png = admin_client.get(f"/racePack/qr/{token}.png")
    assert png.status_code == 200 and png.content.startswith(b"\x89PNG")

    r = admin_client.post(
        "/racePack/claim",
        json={"qrCodeData": token, "participantIds": [participant_id], "claimedBy": "Desk 2", "claimType": "staff"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["scansRemaining"] == 0
    assert r.json()["claimedParticipantIds"] == [participant_id]

    again = admin_client.post("/racePack/claim", json={"qrCodeData": token, "claimType": "staff"})
    assert again.status_code == 400

    history = admin_client.get("/racePack/claims").json()
    assert history["total"] == 1 and history["totalPacks"] == 1

    csv_text = admin_client.get("/api/claims.csv").text
    assert "Desk 2" in csv_text


def test_self_claim_needs_password(client):
    token = _submit(client).json()["qrCodes"][0]["qrCodeData"]
    r = client.post("/racePack/claim", json={"qrCodeData": token, "claimType": "self", "password": "guess"})
    assert r.status_code == 401
    r = client.post("/racePack/claim", json={"qrCodeData": token, "claimType": "self", "password": "self-secret"})
    assert r.status_code == 200


def test_update_category_validates_tiers(admin_client):
    ids = _ids(admin_client)
    bad = admin_client.put(f"/admin/categories/{ids['5km']}", json={"tier1Max": 40})
    assert bad.status_code == 400
    ok = admin_client.put(f"/admin/categories/{ids['5km']}", json={"earlyBirdCapacity": 5})
    assert ok.status_code == 200
    assert ok.json()["earlyBirdRemaining"] == 5


def test_participants_csv(admin_client):
    _submit(admin_client)
    r = admin_client.get("/api/participants.csv")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("participant_id,registration_id")
    assert "rina@example.com" in lines[1]


def test_forwarded_for_header_does_not_reset_login_lock(client):
    for i in range(3):
        r = client.post(
            "/admin/login",
            json={"username": "admin", "password": "nope"},
            headers={"X-Forwarded-For": f"10.9.9.{i}"},
        )
        assert r.status_code == 401
    r = client.post(
        "/admin/login",
        json={"username": "admin", "password": "admin-pass"},
        headers={"X-Forwarded-For": "10.9.9.200"},
    )
    assert r.status_code == 429


def test_null_base_price_is_rejected(admin_client):
    ids = _ids(admin_client)
    r = admin_client.put(f"/admin/categories/{ids['5km']}", json={"basePrice": None})
    assert r.status_code == 400
    assert "basePrice" in r.json()["error"]
    five = next(c for c in admin_client.get("/categories").json() if c["name"] == "5km")
    assert five["basePrice"] is not None


def test_duplicate_transaction_id_is_409_and_writes_nothing(client, db_session, monkeypatch):
    fixed = uuid.UUID("00000000-0000-4000-8000-0000000000aa")
    monkeypatch.setattr("colorrun.registrations.uuid", SimpleNamespace(uuid4=lambda: fixed))
    assert _submit(client).status_code == 200

    def counts():
        return [
            db_session.execute(select(func.count(model.id))).scalar_one()
            for model in (models.Payment, models.Registration, models.Participant)
        ]

    before = counts()
    r = _submit(client, email="someone.else@example.com", fullName="Someone Else")
    assert r.status_code == 409
    assert "error" in r.json()
    db_session.expire_all()
    assert counts() == before


def test_multipart_submission_without_items_is_400(client):
    r = client.post(
        "/payments",
        data={"fullName": "Budi Santoso", "email": "budi@example.com"},
        files={"proof": ("proof.jpg", PNG, "image/jpeg")},
    )
    assert r.status_code == 400
    assert "items" in r.json()["error"]
