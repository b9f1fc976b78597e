"""Card activation flow: PIN check, OTP issuance, OTP check, activation.

A card moves ``Created -> OtpPending -> Active``. ``request_otp`` may be
repeated while pending; each call invalidates the previous code. ``Active``
is terminal and both operations refuse an active card with
``CardAlreadyActive``.
"""

from __future__ import annotations

import logging
import re
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from card_activation.config import settings
from card_activation.database import session_scope
from card_activation.services.cards import CardStore
from card_activation.services.clock import Clock, utcnow
from card_activation.services.codes import EntropySource, generate_digits
from card_activation.services.errors import (
    CardAlreadyActive,
    GenerationError,
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
from card_activation.services.hashing import (
    MAX_SECRET_BYTES,
    SecretHasher,
    fits_bcrypt,
    secret_hasher,
)
from card_activation.services.ledger import OtpLedger
from card_activation.services.notifier import (
    CHANNELS,
    Notifier,
    build_notifier,
    render_otp_message,
)
from card_activation.services.sms import normalize_e164
from card_activation.services.throttle import AttemptThrottle, build_throttle

LOGGER = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class CreatedCard:
    card_id: str
    card_token: str
    pin: str


@dataclass(frozen=True)
class OtpIssued:
    record_id: int
    delivered: bool
    expires_in_seconds: int
    otp: str


@dataclass(frozen=True)
class ActivationResult:
    card_id: str
    activated_at: datetime


@dataclass(frozen=True)
class CardStatus:
    card_token: str
    is_active: bool
    activated_at: Optional[datetime]


def resolve_destination(channel: str, destination: Optional[str]) -> str:
    if channel not in CHANNELS:
        raise ValidationError("Invalid channel")
    cleaned = (destination or "").strip()
    if channel == "email":
        if not cleaned:
            raise ValidationError("No email available")
        if not _EMAIL_PATTERN.match(cleaned):
            raise ValidationError("Invalid email address")
        return cleaned.lower()
    if not cleaned:
        raise ValidationError("No phone available")
    try:
        return normalize_e164(cleaned)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


@contextmanager
def _internal_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (SQLAlchemyError, HashingError, GenerationError) as exc:
        LOGGER.exception("Failed to %s", action)
        raise InternalError() from exc


class ActivationService:
    def __init__(
        self,
        cards: CardStore,
        ledger: OtpLedger,
        throttle: AttemptThrottle,
        hasher: SecretHasher,
        notifier: Notifier,
        clock: Clock = utcnow,
        entropy: EntropySource = secrets.token_bytes,
        pin_length: int = 6,
        otp_length: int = 6,
        otp_ttl_minutes: int = 5,
    ) -> None:
        self._cards = cards
        self._ledger = ledger
        self._throttle = throttle
        self._hasher = hasher
        self._notifier = notifier
        self._clock = clock
        self._entropy = entropy
        self._pin_length = pin_length
        self._otp_length = otp_length
        self._otp_ttl_minutes = otp_ttl_minutes

    def create_card(
        self, owner_profile_id: Optional[str] = None, pin: Optional[str] = None
    ) -> CreatedCard:
        if pin and not fits_bcrypt(pin):
            raise ValidationError(f"PIN must be at most {MAX_SECRET_BYTES} bytes")
        with _internal_errors("create card"):
            plain_pin = pin or generate_digits(self._pin_length, self._entropy)
            card = self._cards.create_card(owner_profile_id, self._hasher.hash(plain_pin))
        LOGGER.info("Created card %s", card.id)
        return CreatedCard(card_id=card.id, card_token=card.card_token, pin=plain_pin)

    def request_otp(
        self,
        card_token: str,
        pin: str,
        channel: str,
        destination: Optional[str],
    ) -> OtpIssued:
        send_to = resolve_destination(channel, destination)

        with _internal_errors("check pin"), self._throttle.hold(card_token):
            if not self._throttle.check_allowed(card_token):
                raise Throttled()
            card = self._cards.get_by_token(card_token)
            if not self._hasher.verify(card.pin_hash, pin):
                self._throttle.record_failure(card_token)
                raise InvalidCredential()
            self._throttle.record_success(card_token)

        if card.is_active:
            raise CardAlreadyActive()

        with _internal_errors("issue otp"):
            otp = generate_digits(self._otp_length, self._entropy)
            record_id = self._ledger.issue(
                card.id, otp, send_to, channel, self._otp_ttl_minutes
            )

        delivered = self._deliver(send_to, channel, otp)
        if not delivered:
            LOGGER.warning(
                "OTP %s issued for card %s but delivery was not confirmed",
                record_id,
                card.id,
            )
        return OtpIssued(
            record_id=record_id,
            delivered=delivered,
            expires_in_seconds=self._otp_ttl_minutes * 60,
            otp=otp,
        )

    def verify_otp(
        self, card_token: str, otp: str, activated_by: Optional[str] = None
    ) -> ActivationResult:
        with _internal_errors("verify otp"):
            card = self._cards.get_by_token(card_token)
            if card.is_active:
                raise CardAlreadyActive()
            try:
                record = self._ledger.current_for(card.id)
            except NotFound as exc:
                raise NoOtpRequested() from exc
            if record.used:
                raise OtpAlreadyUsed()
            now = self._clock()
            if record.is_expired(now):
                raise OtpExpired()
            if not self._hasher.verify(record.otp_hash, otp):
                raise InvalidOtp()

            with session_scope() as session:
                if not self._ledger.mark_used(record.id, session=session):
                    raise OtpAlreadyUsed()
                self._cards.activate(session, card.id, now, activated_by)

        LOGGER.info("Card %s activated", card.id)
        return ActivationResult(card_id=card.id, activated_at=now)

    def card_status(self, card_token: str) -> CardStatus:
        with _internal_errors("load card"):
            card = self._cards.get_by_token(card_token)
        return CardStatus(
            card_token=card.card_token,
            is_active=card.is_active,
            activated_at=card.activated_at,
        )

    def _deliver(self, destination: str, channel: str, otp: str) -> bool:
        payload = render_otp_message(otp, self._otp_ttl_minutes)
        try:
            return self._notifier.send(destination, channel, payload)
        except Exception:
            LOGGER.exception("Notifier raised while sending OTP to %s", destination)
            return False


def build_activation_service(clock: Clock = utcnow) -> ActivationService:
    return ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(secret_hasher, clock),
        throttle=build_throttle(settings.throttle_backend, clock),
        hasher=secret_hasher,
        notifier=build_notifier(settings.notifier_backend),
        clock=clock,
        pin_length=settings.pin_length,
        otp_length=settings.otp_length,
        otp_ttl_minutes=settings.otp_ttl_minutes,
    )


activation_service = build_activation_service()
