import pytest
from sqlalchemy import select

from colorrun import models
from colorrun.errors import NotFound, ValidationFailed
from colorrun.payments import confirm_payment, decline_payment, resend_confirmation
from colorrun.pricing import early_bird_remaining
from colorrun.services import generate_access_code


def _individuals(category_id: int, n: int):
    return [{"category_id": category_id, "jersey_size": "M"} for _ in range(n)]


def test_confirm_assigns_bibs_access_code_and_sends_qr_mail(db_session, category, register, mailer):
    ten = category("10km")
    result = register(_individuals(ten.id, 2))
    change = confirm_payment(db_session, registration_id=result.registrations[0].id)

    assert change.payment.status == "confirmed"
    assert change.email_sent is True
    reg = change.registrations[0]
    assert reg.payment_status == "confirmed"
    assert [p.bib_number for p in reg.participants] == ["100001", "100002"]
    assert reg.user.access_code == "rina_runner"

    assert len(mailer.sent) == 1
    mail = mailer.sent[0]
    assert mail.to == "rina@example.com"
    assert "rina_runner" in mail.html
    assert len(mail.images) == len(reg.qr_codes) == 1
    assert f"cid:{mail.images[0].cid}" in mail.html


def test_confirm_covers_every_registration_of_the_payment(db_session, category, register):
    five = category("5km")
    result = register(
        [
            {"type": "individual", "category_id": five.id, "jersey_size": "M"},
            {"type": "community", "category_id": five.id, "jerseys": {"L": 10}},
        ],
        group_name="Kantor Sehat",
    )
    assert len(result.registrations) == 2
    change = confirm_payment(db_session, payment_id=result.payment.id)
    assert {r.payment_status for r in change.registrations} == {"confirmed"}
    bibs = [p.bib_number for r in change.registrations for p in r.participants]
    assert len(bibs) == 11 and len(set(bibs)) == 11


def test_decline_restores_exactly_the_consumed_early_bird_slots(db_session, category, register, mailer):
    ten = category("10km")
    before = early_bird_remaining(db_session, ten)
    result = register(_individuals(ten.id, 5))
    assert early_bird_remaining(db_session, ten) == before - 5

    change = decline_payment(db_session, registration_id=result.registrations[0].id, reason="Transfer amount does not match")
    assert change.payment.status == "declined"
    assert change.payment.decline_reason == "Transfer amount does not match"
    assert early_bird_remaining(db_session, ten) == before
    assert "Transfer amount does not match" in mailer.sent[-1].html


def test_confirm_decline_confirm_keeps_bibs_and_reclaims_slots(db_session, category, register):
    ten = category("10km")
    result = register(_individuals(ten.id, 3))
    reg_id = result.registrations[0].id
    before = early_bird_remaining(db_session, ten)

    first = confirm_payment(db_session, registration_id=reg_id)
    bibs = [p.bib_number for p in first.registrations[0].participants]
    code = first.registrations[0].user.access_code

    decline_payment(db_session, registration_id=reg_id, reason="wrong account")
    assert early_bird_remaining(db_session, ten) == before + 3

    again = confirm_payment(db_session, registration_id=reg_id)
    assert [p.bib_number for p in again.registrations[0].participants] == bibs
    assert again.registrations[0].user.access_code == code
    assert again.payment.decline_reason is None
    assert early_bird_remaining(db_session, ten) == before
    assert len(again.registrations[0].qr_codes) == 1


def test_email_failure_does_not_undo_confirmation(db_session, category, register, mailer):
    result = register(_individuals(category("3km").id, 1))
    mailer.fail = True
    change = confirm_payment(db_session, payment_id=result.payment.id)
    assert change.email_sent is False

    db_session.expire_all()
    payment = db_session.get(models.Payment, result.payment.id)
    assert payment.status == "confirmed"
    assert payment.registrations[0].participants[0].bib_number == "30001"


def test_status_change_for_unknown_registration(db_session):
    with pytest.raises(NotFound):
        confirm_payment(db_session, registration_id=4242)
    with pytest.raises(ValidationFailed):
        decline_payment(db_session)


def test_resend_requires_confirmed_payment(db_session, category, register, mailer):
    result = register(_individuals(category("5km").id, 1))
    with pytest.raises(ValidationFailed):
        resend_confirmation(db_session, payment_id=result.payment.id)

    confirm_payment(db_session, payment_id=result.payment.id)
    change = resend_confirmation(db_session, registration_id=result.registrations[0].id)
    assert change.email_sent is True
    assert len(mailer.sent) == 2


def test_access_codes_are_unique_and_normalized(db_session, category, register):
    three = category("3km").id
    a = register(_individuals(three, 1), email="one@example.com", name="Félicia Angelie!")
    b = register(_individuals(three, 1), email="two@example.com", name="Felicia  Angelie")
    confirm_payment(db_session, payment_id=a.payment.id)
    confirm_payment(db_session, payment_id=b.payment.id)

    codes = db_session.execute(
        select(models.User.access_code).where(models.User.email.in_(["one@example.com", "two@example.com"])).order_by(models.User.id)
    ).scalars().all()
    assert codes == ["felicia_angelie", "felicia_angelie_1"]
    assert generate_access_code(db_session, "Felicia Angelie") == "felicia_angelie_2"
