from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from card_activation.config import settings
from card_activation.services.clock import Clock, as_utc, utcnow
from card_activation.services.notifier import DeliveryError

LOGGER = logging.getLogger(__name__)

GMAIL_SEND_ENDPOINT = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
CREDENTIALS_DIR = Path(__file__).resolve().parents[2] / "credentials"
TOKEN_REFRESH_MARGIN = timedelta(minutes=1)


def _read_json_file(path: Path) -> dict[str, Any]:
    try:
        content = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise DeliveryError(f"Missing Gmail file: {path}") from exc
    except (OSError, ValueError) as exc:
        raise DeliveryError(f"Unreadable Gmail file: {path}") from exc
    if not isinstance(content, dict):
        raise DeliveryError(f"Gmail file is not a JSON object: {path}")
    return content


class GmailTokenFile:
    """OAuth token file as written by Google's installed-app flow.

    ``access_token`` returns the cached token while it is still valid and
    otherwise exchanges the refresh token, persisting the result.
    """

    def __init__(self, path: Path, credentials_path: Path, clock: Clock = utcnow) -> None:
        self.path = path
        self.credentials_path = credentials_path
        self._clock = clock

    def access_token(self, timeout: float) -> str:
        state = _read_json_file(self.path)
        cached = state.get("token")
        valid_until = parse_expiry(state.get("expiry"))
        if cached and valid_until and valid_until > self._clock() + TOKEN_REFRESH_MARGIN:
            return cached

        if not state.get("refresh_token"):
            raise DeliveryError("Gmail refresh token is missing")
        grant = self._refresh(state, timeout)
        state["token"] = grant["access_token"]
        state["expiry"] = (self._clock() + timedelta(seconds=grant["expires_in"])).isoformat()
        try:
            self.path.write_text(json.dumps(state), encoding="utf-8")
        except OSError as exc:
            raise DeliveryError(f"Could not store refreshed Gmail token: {self.path}") from exc
        return grant["access_token"]

    def _refresh(self, state: dict[str, Any], timeout: float) -> dict[str, Any]:
        client_id, client_secret = self._client_pair(state)
        form = urlencode(
            {
                "grant_type": "refresh_token",
                "refresh_token": state["refresh_token"],
                "client_id": client_id,
                "client_secret": client_secret,
            }
        ).encode("utf-8")
        body = _call_google(
            Request(state.get("token_uri") or DEFAULT_TOKEN_URI, data=form, method="POST"),
            timeout,
            "refresh Gmail token",
        )
        try:
            reply = json.loads(body)
            access_token = reply.get("access_token")
            lifetime = int(reply.get("expires_in", 3600))
        except (ValueError, TypeError, AttributeError) as exc:
            raise DeliveryError("Malformed Gmail token refresh response") from exc
        if not access_token:
            raise DeliveryError("Gmail token refresh did not return an access token")
        return {"access_token": access_token, "expires_in": lifetime}

    def _client_pair(self, state: dict[str, Any]) -> tuple[str, str]:
        if state.get("client_id") and state.get("client_secret"):
            return state["client_id"], state["client_secret"]
        stored = _read_json_file(self.credentials_path)
        section = stored.get("installed") or stored
        if not isinstance(section, dict):
            raise DeliveryError("Gmail client credentials are missing")
        pair = (section.get("client_id"), section.get("client_secret"))
        if not all(pair):
            raise DeliveryError("Gmail client credentials are missing")
        return pair


class GmailSender:
    """Sends activation codes through the Gmail REST API."""

    def __init__(
        self,
        timeout: float,
        sender: str = "",
        subject: str = "",
        token_file: Optional[Path] = None,
        credentials_file: Optional[Path] = None,
    ) -> None:
        self._timeout = timeout
        self._sender = sender or settings.otp_email_sender
        self._subject = subject or settings.otp_email_subject
        self.tokens = GmailTokenFile(
            Path(token_file or settings.gmail_token_file or CREDENTIALS_DIR / "token.json"),
            Path(
                credentials_file
                or settings.gmail_credentials_file
                or CREDENTIALS_DIR / "credentials.json"
            ),
        )

    def send(self, destination: str, payload: str) -> None:
        if not self._sender:
            raise DeliveryError("OTP email sender is not configured")
        bearer = self.tokens.access_token(self._timeout)
        message = build_raw_message(self._sender, destination, self._subject, payload)
        _call_google(
            Request(
                GMAIL_SEND_ENDPOINT,
                data=json.dumps({"raw": message}).encode("utf-8"),
                headers={
                    "Authorization": f"Bearer {bearer}",
                    "Content-Type": "application/json",
                },
                method="POST",
            ),
            self._timeout,
            "send OTP email",
        )


def _call_google(request: Request, timeout: float, action: str) -> str:
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.read().decode("utf-8")
    except HTTPError as exc:
        LOGGER.error(
            "Gmail call failed (%s): %s", action, exc.read().decode("utf-8", errors="replace")
        )
        raise DeliveryError(f"Failed to {action}") from exc
    except (URLError, TimeoutError) as exc:
        raise DeliveryError(f"Could not reach Google to {action}") from exc


def build_raw_message(sender: str, recipient: str, subject: str, body: str) -> str:
    headers = (
        f"From: {sender}\r\n"
        f"To: {recipient}\r\n"
        f"Subject: {subject}\r\n"
        "MIME-Version: 1.0\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
    )
    # Gmail API expects base64url-encoded RFC 2822 content.
    return base64.urlsafe_b64encode(f"{headers}\r\n{body}".encode("utf-8")).decode("ascii")


def parse_expiry(raw_value: Any) -> Optional[datetime]:
    if not isinstance(raw_value, str) or not raw_value:
        return None
    try:
        return as_utc(datetime.fromisoformat(raw_value.replace("Z", "+00:00")))
    except ValueError:
        return None
