"""Shared fixtures: a throwaway SQLite database, a controllable clock and a
recording notifier wired into an ActivationService."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from card_activation import database
from card_activation.services.activation import ActivationService
from card_activation.services.cards import CardStore
from card_activation.services.hashing import SecretHasher
from card_activation.services.ledger import OtpLedger
from card_activation.services.throttle import InMemoryAttemptThrottle


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.sent: list[tuple[str, str, str]] = []

    def send(self, destination: str, channel: str, payload: str) -> bool:
        self.sent.append((destination, channel, payload))
        return self.result

    @property
    def last_code(self) -> str:
        payload = self.sent[-1][2]
        return payload.split("code is ", 1)[1][:6]


@pytest.fixture
def db(tmp_path):
    database.configure_database(f"sqlite:///{tmp_path / 'cards.db'}")
    database.init_db()
    yield database.engine
    database.engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def hasher():
    return SecretHasher(rounds=4)


@pytest.fixture
def throttle(clock):
    return InMemoryAttemptThrottle(5, timedelta(minutes=15), clock)


@pytest.fixture
def service(db, clock, notifier, hasher, throttle):
    return ActivationService(
        cards=CardStore(clock),
        ledger=OtpLedger(hasher, clock),
        throttle=throttle,
        hasher=hasher,
        notifier=notifier,
        clock=clock,
    )
