from dataclasses import dataclass
from datetime import datetime, timedelta
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from card_activation.database import session_scope
from card_activation.models.otp import CardOtpEntry
from card_activation.services.clock import Clock, as_utc, utcnow
from card_activation.services.errors import NotFound
from card_activation.services.hashing import SecretHasher

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OtpRecordView:
    id: int
    card_id: str
    otp_hash: str
    sent_to: str
    channel: str
    expires_at: datetime
    used: bool
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def _to_view(entry: CardOtpEntry) -> OtpRecordView:
    return OtpRecordView(
        id=entry.id,
        card_id=entry.card_id,
        otp_hash=entry.otp_hash,
        sent_to=entry.sent_to,
        channel=entry.channel,
        expires_at=as_utc(entry.expires_at),
        used=bool(entry.used),
        created_at=as_utc(entry.created_at),
    )


class OtpLedger:
    """Hashed one-time passcodes, one current record per card."""

    def __init__(self, hasher: SecretHasher, clock: Clock = utcnow) -> None:
        self._hasher = hasher
        self._clock = clock

    def issue(
        self,
        card_id: str,
        otp_plain: str,
        destination: str,
        channel: str,
        ttl_minutes: int,
    ) -> int:
        """Store a new OTP and invalidate any earlier unused one for the card."""
        now = self._clock()
        otp_hash = self._hasher.hash(otp_plain)
        with session_scope() as session:
            superseded = session.execute(
                update(CardOtpEntry)
                .where(CardOtpEntry.card_id == card_id, CardOtpEntry.used.is_(False))
                .values(used=True)
            ).rowcount
            if superseded:
                LOGGER.info("Invalidated %d earlier otp(s) for card %s", superseded, card_id)
            entry = CardOtpEntry(
                card_id=card_id,
                otp_hash=otp_hash,
                sent_to=destination,
                channel=channel,
                expires_at=now + timedelta(minutes=ttl_minutes),
                used=False,
                created_at=now,
            )
            session.add(entry)
            session.flush()
            return entry.id

    def current_for(self, card_id: str) -> OtpRecordView:
        with session_scope() as session:
            entry = session.execute(
                select(CardOtpEntry)
                .where(CardOtpEntry.card_id == card_id)
                .order_by(CardOtpEntry.created_at.desc(), CardOtpEntry.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if entry is None:
                raise NotFound("No otp requested")
            return _to_view(entry)

    def mark_used(self, record_id: int, session: Session | None = None) -> bool:
        """Flip ``used`` if it is still false; True only for the caller that flipped it."""
        statement = (
            update(CardOtpEntry)
            .where(CardOtpEntry.id == record_id, CardOtpEntry.used.is_(False))
            .values(used=True)
        )
        if session is not None:
            return session.execute(statement).rowcount == 1
        with session_scope() as own_session:
            return own_session.execute(statement).rowcount == 1
