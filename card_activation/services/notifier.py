from __future__ import annotations

import logging
from typing import Protocol

from card_activation.config import settings

LOGGER = logging.getLogger(__name__)

CHANNELS = ("email", "sms")


class DeliveryError(RuntimeError):
    pass


class Notifier(Protocol):
    def send(self, destination: str, channel: str, payload: str) -> bool: ...


class ChannelSender(Protocol):
    def send(self, destination: str, payload: str) -> None: ...


def render_otp_message(code: str, ttl_minutes: int) -> str:
    minutes = max(1, ttl_minutes)
    return (
        f"Your card activation code is {code}."
        f" It expires in {minutes} minute(s)."
        " If you did not request this code, you can ignore this message."
    )


class LogNotifier:
    """Writes the message to the log instead of delivering it."""

    def send(self, destination: str, channel: str, payload: str) -> bool:
        LOGGER.info("%s OTP to %s: %s", channel.upper(), destination, payload)
        return True


class ChannelNotifier:
    def __init__(self, senders: dict[str, ChannelSender]) -> None:
        self._senders = senders

    def send(self, destination: str, channel: str, payload: str) -> bool:
        sender = self._senders.get(channel)
        if sender is None:
            LOGGER.error("No sender configured for channel=%s", channel)
            return False
        try:
            sender.send(destination, payload)
        except DeliveryError as exc:
            LOGGER.error("OTP delivery failed channel=%s to=%s: %s", channel, destination, exc)
            return False
        except Exception:
            LOGGER.exception("OTP sender crashed channel=%s to=%s", channel, destination)
            return False
        return True


def build_notifier(backend: str) -> Notifier:
    if backend == "log":
        return LogNotifier()
    if backend != "live":
        raise ValueError(f"Unknown notifier backend: {backend}")
    from card_activation.services.email import GmailSender
    from card_activation.services.sms import TwilioSender

    return ChannelNotifier(
        {
            "email": GmailSender(timeout=settings.notifier_timeout_seconds),
            "sms": TwilioSender(timeout=settings.notifier_timeout_seconds),
        }
    )
