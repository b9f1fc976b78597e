from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from card_activation.database import session_scope
from card_activation.models.card import CardEntry
from card_activation.services.clock import Clock, as_utc, utcnow
from card_activation.services.errors import NotFound


@dataclass(frozen=True)
class CardView:
    id: str
    card_token: str
    owner_profile_id: Optional[str]
    pin_hash: str
    is_active: bool
    activated_at: Optional[datetime]
    activated_by: Optional[str]


def _to_view(entry: CardEntry) -> CardView:
    return CardView(
        id=entry.id,
        card_token=entry.card_token,
        owner_profile_id=entry.owner_profile_id,
        pin_hash=entry.pin_hash,
        is_active=bool(entry.is_active),
        activated_at=as_utc(entry.activated_at),
        activated_by=entry.activated_by,
    )


class CardStore:
    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock

    def create_card(self, owner_profile_id: Optional[str], pin_hash: str) -> CardView:
        entry = CardEntry(
            id=str(uuid.uuid4()),
            owner_profile_id=owner_profile_id,
            pin_hash=pin_hash,
            card_token=str(uuid.uuid4()),
            is_active=False,
            created_at=self._clock(),
        )
        with session_scope() as session:
            session.add(entry)
            session.flush()
            return _to_view(entry)

    def get_by_token(self, card_token: str) -> CardView:
        with session_scope() as session:
            entry = session.execute(
                select(CardEntry).where(CardEntry.card_token == card_token)
            ).scalar_one_or_none()
            if entry is None:
                raise NotFound("Card not found")
            return _to_view(entry)

    def activate(
        self,
        session: Session,
        card_id: str,
        activated_at: datetime,
        activated_by: Optional[str] = None,
    ) -> None:
        values = {"is_active": True, "activated_at": activated_at}
        if activated_by is not None:
            values["activated_by"] = activated_by
        session.execute(update(CardEntry).where(CardEntry.id == card_id).values(**values))
