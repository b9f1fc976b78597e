"""Tests for the card activation flow."""

from __future__ import annotations

import threading

import pytest

from card_activation.services.activation import ActivationService, resolve_destination
from card_activation.services.cards import CardStore
from card_activation.services.errors import (
    ActivationError,
    CardAlreadyActive,
    HashingError,
    InternalError,
    InvalidCredential,
    InvalidOtp,
    NoOtpRequested,
    NotFound,
    OtpAlreadyUsed,
    OtpExpired,
    Throttled,
    ValidationError,
)
from card_activation.services.email import GmailSender
from card_activation.services.ledger import OtpLedger
from card_activation.services.notifier import ChannelNotifier, DeliveryError


def _status(service, token):
    return service.card_status(token)


def test_create_card_with_explicit_pin(service):
    created = service.create_card(owner_profile_id="profile-1", pin="1234")
    assert created.pin == "1234"
    assert created.card_id != created.card_token
    assert not _status(service, created.card_token).is_active


def test_create_card_generates_six_digit_pin(service):
    created = service.create_card()
    assert len(created.pin) == 6
    assert created.pin.isdigit()
    service.request_otp(created.card_token, created.pin, "email", "a@b.com")


def test_full_activation_flow(service, notifier, clock):
    created = service.create_card(pin="1234")

    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    assert issued.delivered
    assert issued.expires_in_seconds == 300
    assert notifier.sent[-1][:2] == ("a@b.com", "email")
    assert notifier.last_code == issued.otp

    result = service.verify_otp(created.card_token, issued.otp)
    assert result.card_id == created.card_id
    assert result.activated_at == clock.now

    status = _status(service, created.card_token)
    assert status.is_active
    assert status.activated_at == clock.now


def test_activated_by_is_recorded(service, db):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "sms", "5551234567")
    service.verify_otp(created.card_token, issued.otp, activated_by="admin-7")

    card = CardStore().get_by_token(created.card_token)
    assert card.activated_by == "admin-7"


def test_wrong_pin_is_rejected(service, notifier):
    created = service.create_card(pin="1234")
    with pytest.raises(InvalidCredential):
        service.request_otp(created.card_token, "0000", "email", "a@b.com")
    assert notifier.sent == []


def test_sixth_request_after_five_wrong_pins_is_throttled(service, clock):
    created = service.create_card(pin="1234")
    for _ in range(5):
        with pytest.raises(InvalidCredential):
            service.request_otp(created.card_token, "0000", "email", "a@b.com")

    with pytest.raises(Throttled):
        service.request_otp(created.card_token, "1234", "email", "a@b.com")

    clock.advance(minutes=15)
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    assert issued.delivered


def test_correct_pin_clears_failure_count(service):
    created = service.create_card(pin="1234")
    for _ in range(4):
        with pytest.raises(InvalidCredential):
            service.request_otp(created.card_token, "0000", "email", "a@b.com")
    service.request_otp(created.card_token, "1234", "email", "a@b.com")
    for _ in range(4):
        with pytest.raises(InvalidCredential):
            service.request_otp(created.card_token, "0000", "email", "a@b.com")
    service.request_otp(created.card_token, "1234", "email", "a@b.com")


def test_unknown_token_is_not_found(service):
    with pytest.raises(NotFound):
        service.request_otp("missing", "1234", "email", "a@b.com")
    with pytest.raises(NotFound):
        service.verify_otp("missing", "123456")
    with pytest.raises(NotFound):
        service.card_status("missing")


@pytest.mark.parametrize(
    "channel, destination, message",
    [
        ("fax", "a@b.com", "Invalid channel"),
        ("email", None, "No email available"),
        ("email", "   ", "No email available"),
        ("email", "not-an-email", "Invalid email address"),
        ("sms", "", "No phone available"),
        ("sms", "12345", "valid country code"),
    ],
)
def test_bad_destination_does_not_count_as_pin_failure(service, channel, destination, message):
    created = service.create_card(pin="1234")
    with pytest.raises(ValidationError, match=message):
        service.request_otp(created.card_token, "0000", channel, destination)
    for _ in range(4):
        with pytest.raises(InvalidCredential):
            service.request_otp(created.card_token, "0000", "email", "a@b.com")
    service.request_otp(created.card_token, "1234", "email", "a@b.com")


def test_resolve_destination_normalizes():
    assert resolve_destination("email", " A@B.com ") == "a@b.com"
    assert resolve_destination("sms", "(555) 123-4567") == "+15551234567"
    assert resolve_destination("sms", "+44 20 7946 0958") == "+442079460958"


def test_verify_without_requested_otp(service):
    created = service.create_card(pin="1234")
    with pytest.raises(NoOtpRequested):
        service.verify_otp(created.card_token, "999999")


def test_verify_with_wrong_otp(service):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    wrong = "0" * 6 if issued.otp != "000000" else "111111"
    with pytest.raises(InvalidOtp):
        service.verify_otp(created.card_token, wrong)
    service.verify_otp(created.card_token, issued.otp)


def test_expired_otp_is_rejected(service, clock):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    clock.advance(minutes=5)
    with pytest.raises(OtpExpired):
        service.verify_otp(created.card_token, issued.otp)
    assert not _status(service, created.card_token).is_active


def test_otp_just_before_expiry_is_accepted(service, clock):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    clock.advance(minutes=4, seconds=59)
    service.verify_otp(created.card_token, issued.otp)


def test_reissued_otp_replaces_previous(service, clock):
    created = service.create_card(pin="1234")
    first = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    clock.advance(seconds=10)
    second = service.request_otp(created.card_token, "1234", "email", "a@b.com")

    if first.otp != second.otp:
        with pytest.raises(InvalidOtp):
            service.verify_otp(created.card_token, first.otp)
    service.verify_otp(created.card_token, second.otp)


def test_verify_on_active_card_is_refused(service):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    service.verify_otp(created.card_token, issued.otp)

    with pytest.raises(CardAlreadyActive):
        service.verify_otp(created.card_token, issued.otp)
    with pytest.raises(CardAlreadyActive):
        service.request_otp(created.card_token, "1234", "email", "a@b.com")


def test_active_card_still_requires_pin(service):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    service.verify_otp(created.card_token, issued.otp)
    with pytest.raises(InvalidCredential):
        service.request_otp(created.card_token, "0000", "email", "a@b.com")


def test_used_otp_on_inactive_card_is_rejected(service, hasher):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    ledger = OtpLedger(hasher)
    ledger.mark_used(ledger.current_for(created.card_id).id)

    with pytest.raises(OtpAlreadyUsed):
        service.verify_otp(created.card_token, issued.otp)


def test_concurrent_verifications_activate_exactly_once(service):
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")

    start = threading.Barrier(2)
    outcomes = []

    def verify():
        start.wait()
        try:
            outcomes.append(service.verify_otp(created.card_token, issued.otp))
        except ActivationError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=verify) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    successes = [item for item in outcomes if not isinstance(item, ActivationError)]
    failures = [item for item in outcomes if isinstance(item, ActivationError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (OtpAlreadyUsed, CardAlreadyActive))
    assert _status(service, created.card_token).is_active


def test_undelivered_otp_remains_valid(service, notifier):
    notifier.result = False
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    assert not issued.delivered
    service.verify_otp(created.card_token, issued.otp)


def test_notifier_raising_delivery_error_is_not_fatal(db, clock, hasher, throttle):
    class ExplodingNotifier:
        def send(self, destination, channel, payload):
            raise DeliveryError("smtp down")

    service = ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(hasher, clock),
        throttle=throttle,
        hasher=hasher,
        notifier=ExplodingNotifier(),
        clock=clock,
    )
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "sms", "5551234567")
    assert not issued.delivered


def _service_with_notifier(clock, hasher, throttle, notifier):
    return ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(hasher, clock),
        throttle=throttle,
        hasher=hasher,
        notifier=notifier,
        clock=clock,
    )


@pytest.mark.parametrize("error", [RuntimeError("bug"), ValueError("bad"), OSError("disk")])
def test_any_notifier_exception_leaves_otp_issued(db, clock, hasher, throttle, error):
    class CrashingNotifier:
        def send(self, destination, channel, payload):
            raise error

    service = _service_with_notifier(clock, hasher, throttle, CrashingNotifier())
    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    assert not issued.delivered
    service.verify_otp(created.card_token, issued.otp)


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"refresh_token": "r"}'])
def test_broken_gmail_token_file_reports_undelivered(db, clock, hasher, throttle, tmp_path, content):
    token_file = tmp_path / "token.json"
    token_file.write_text(content, encoding="utf-8")
    gmail = GmailSender(
        timeout=1,
        sender="cards@example.com",
        token_file=token_file,
        credentials_file=tmp_path / "credentials.json",
    )
    service = _service_with_notifier(clock, hasher, throttle, ChannelNotifier({"email": gmail}))

    created = service.create_card(pin="1234")
    issued = service.request_otp(created.card_token, "1234", "email", "a@b.com")
    assert not issued.delivered
    service.verify_otp(created.card_token, issued.otp)
    assert _status(service, created.card_token).is_active


def test_oversized_pin_counts_as_wrong_pin(service):
    created = service.create_card(pin="1234")
    long_pin = "\U0001F600" * 32
    for _ in range(5):
        with pytest.raises(InvalidCredential):
            service.request_otp(created.card_token, long_pin, "email", "a@b.com")
    with pytest.raises(Throttled):
        service.request_otp(created.card_token, "1234", "email", "a@b.com")


def test_create_card_rejects_pin_longer_than_bcrypt_accepts(service):
    with pytest.raises(ValidationError, match="at most 72 bytes"):
        service.create_card(pin="\U0001F600" * 32)
    assert service.create_card(pin="9" * 72).pin == "9" * 72


def test_unknown_tokens_leave_no_lock_entries(service, throttle):
    for index in range(1000):
        with pytest.raises(NotFound):
            service.request_otp(f"bogus-{index}", "1234", "email", "a@b.com")
    assert throttle._key_locks._locks == {}


def test_hashing_failure_surfaces_as_internal_error(db, clock, throttle, notifier):
    class BrokenHasher:
        def hash(self, plain):
            raise HashingError("boom")

        def verify(self, hashed, plain):
            raise HashingError("boom")

    service = ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(BrokenHasher(), clock),
        throttle=throttle,
        hasher=BrokenHasher(),
        notifier=notifier,
        clock=clock,
    )
    with pytest.raises(InternalError) as excinfo:
        service.create_card(pin="1234")
    assert excinfo.value.detail == "Server error"
    assert isinstance(excinfo.value.__cause__, HashingError)


def test_deterministic_entropy_yields_known_codes(db, clock, hasher, throttle, notifier):
    service = ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(hasher, clock),
        throttle=throttle,
        hasher=hasher,
        notifier=notifier,
        clock=clock,
        entropy=lambda n: bytes([1, 2, 3, 4, 5, 6][:n]),
    )
    created = service.create_card()
    assert created.pin == "123456"
    issued = service.request_otp(created.card_token, "123456", "email", "a@b.com")
    assert issued.otp == "123456"
    assert "123456" in notifier.sent[-1][2]
