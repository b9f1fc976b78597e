from __future__ import annotations

import base64
import logging
import re
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from card_activation.config import settings
from card_activation.services.notifier import DeliveryError

LOGGER = logging.getLogger(__name__)

TWILIO_MESSAGES_ENDPOINT = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def normalize_e164(phone_number: str, default_country_code: str = "") -> str:
    """Return ``+<digits>``; ten-digit numbers get the default country code."""
    digits = re.sub(r"\D", "", phone_number.strip())
    if not digits:
        raise ValueError("Phone number is missing")
    if len(digits) == 10:
        default_code = re.sub(r"\D", "", default_country_code or settings.default_country_code)
        if not default_code:
            raise ValueError("Default country code is not configured")
        digits = f"{default_code}{digits}"
    if len(digits) < 10 or len(digits) > 15:
        raise ValueError("Phone number must include a valid country code")
    return f"+{digits}"


class TwilioSender:
    def __init__(
        self,
        timeout: float,
        account_sid: str = "",
        auth_token: str = "",
        from_phone: str = "",
    ) -> None:
        self._timeout = timeout
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._from_phone = from_phone or settings.twilio_phone_number

    def send(self, destination: str, payload: str) -> None:
        if not self._account_sid or not self._auth_token or not self._from_phone:
            raise DeliveryError("Twilio is not configured")
        try:
            to_number = normalize_e164(destination)
            from_number = normalize_e164(self._from_phone)
        except ValueError as exc:
            raise DeliveryError(str(exc)) from exc

        LOGGER.info("Sending OTP SMS to=%s from=%s", to_number, from_number)
        credentials = base64.b64encode(
            f"{self._account_sid}:{self._auth_token}".encode("utf-8")
        ).decode("ascii")
        request = Request(
            TWILIO_MESSAGES_ENDPOINT.format(sid=self._account_sid),
            data=urlencode({"To": to_number, "From": from_number, "Body": payload}).encode(
                "utf-8"
            ),
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                response.read()
        except HTTPError as exc:
            LOGGER.error(
                "Twilio API error to=%s response=%s",
                to_number,
                exc.read().decode("utf-8", errors="replace"),
            )
            raise DeliveryError("Failed to send OTP SMS") from exc
        except (URLError, TimeoutError) as exc:
            raise DeliveryError("Failed to reach Twilio API") from exc
