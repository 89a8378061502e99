import base64
import httpx
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode
from google.oauth2 import id_token
from google.auth.transport import requests as google_requests

from mailbox_core.core.errors import (
    ConfigurationError,
    CredentialValidationError,
    SendError,
    TokenRefreshError,
)
from mailbox_core.core.logger import get_logger
from mailbox_core.core.security import SecretCodec
from mailbox_core.schemas.email import OutgoingMessage
from mailbox_core.services.imap_smtp import build_mime_message

logger = get_logger(__name__)

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
SEND_URI = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"
GMAIL_SCOPES = [
    "openid",
    "email",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]
DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenGrant:
    """Result of a code exchange. Tokens are already encrypted."""
    email: str
    provider_account_id: Optional[str]
    access_token_enc: str
    refresh_token_enc: str
    token_expires_at: datetime


@dataclass
class RefreshedToken:
    access_token_enc: str
    token_expires_at: datetime
    # Set only when Google rotated the refresh token.
    refresh_token_enc: Optional[str] = None


@dataclass
class GmailClient:
    """Credentials for a single Gmail API call."""
    access_token: str
    refresh_token: str

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}


def encode_raw_message(message: bytes) -> str:
    """Base64url without padding, the form Gmail expects in `raw`."""
    return base64.urlsafe_b64encode(message).rstrip(b"=").decode("ascii")


def _json_object(response: httpx.Response) -> dict:
    body = response.json()
    if not isinstance(body, dict):
        raise ValueError("expected a JSON object")
    return body


def _expiry_from(tokens: dict) -> datetime:
    try:
        expires_in = int(tokens.get("expires_in") or DEFAULT_EXPIRES_IN)
    except TypeError:
        raise ValueError(f"bad expires_in: {tokens.get('expires_in')!r}") from None
    return datetime.now(timezone.utc) + timedelta(seconds=expires_in)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if not isinstance(body, dict):
        return str(body)[:200]
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or error)
    return str(body.get("error_description") or error or body)


class GmailProvider:
    def __init__(self, codec: SecretCodec, client_id: Optional[str], client_secret: Optional[str],
                 redirect_uri: Optional[str], timeout: float = 20.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.codec = codec
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    def _ensure_config(self):
        if not self.client_id or not self.client_secret or not self.redirect_uri:
            raise ConfigurationError("Gmail OAuth environment variables are not fully configured.")

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def build_authorization_url(self, state: str, login_hint: Optional[str] = None) -> str:
        self._ensure_config()
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GMAIL_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        if login_hint:
            params["login_hint"] = login_hint
        return f"{AUTH_URI}?{urlencode(params)}"

    def _verify_id_token(self, token: str) -> dict:
        return id_token.verify_oauth2_token(token, google_requests.Request(), self.client_id)

    async def exchange_code(self, code: str) -> TokenGrant:
        """Trades the callback code for tokens and reads the account email from the id_token."""
        self._ensure_config()
        token_data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with self._http() as client:
                res = await client.post(TOKEN_URI, data=token_data)
                res.raise_for_status()
                tokens = _json_object(res)
                expires_at = _expiry_from(tokens)
        except httpx.HTTPStatusError as e:
            raise CredentialValidationError(
                f"Error exchanging code with Google: {_error_detail(e.response)}"
            ) from e
        except httpx.HTTPError as e:
            raise CredentialValidationError(f"Could not reach Google: {e}") from e
        except ValueError as e:
            raise CredentialValidationError("Google returned an unreadable token response.") from e

        if not tokens.get("access_token") or not tokens.get("refresh_token"):
            raise CredentialValidationError("Gmail OAuth did not return expected tokens.")

        email, subject = "", None
        if tokens.get("id_token"):
            try:
                id_info = self._verify_id_token(tokens["id_token"])
            except ValueError as e:
                raise CredentialValidationError(f"Invalid id_token from Google: {e}") from e
            email = id_info.get("email", "")
            subject = id_info.get("sub")

        return TokenGrant(
            email=email,
            provider_account_id=subject,
            access_token_enc=self.codec.encrypt(tokens["access_token"]),
            refresh_token_enc=self.codec.encrypt(tokens["refresh_token"]),
            token_expires_at=expires_at,
        )

    async def refresh_access_token(self, refresh_token_enc: str) -> RefreshedToken:
        """
        Exchanges the stored refresh token for a new access token. A 400/401
        from Google means the grant is gone, which is terminal for the account.
        """
        self._ensure_config()
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.codec.decrypt(refresh_token_enc),
            "grant_type": "refresh_token",
        }
        try:
            async with self._http() as client:
                res = await client.post(TOKEN_URI, data=token_data)
                res.raise_for_status()
                new_tokens = _json_object(res)
                expires_at = _expiry_from(new_tokens)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in (400, 401):
                raise TokenRefreshError(
                    f"Google rejected the refresh token: {_error_detail(e.response)}. "
                    "Please reconnect the mailbox."
                ) from e
            raise SendError(f"Token refresh failed: {_error_detail(e.response)}") from e
        except httpx.HTTPError as e:
            raise SendError(f"Could not reach Google to refresh the token: {e}") from e
        except ValueError as e:
            raise SendError("Google returned an unreadable token response.") from e

        if not new_tokens.get("access_token"):
            raise TokenRefreshError("Failed to refresh Gmail access token.")

        refreshed = RefreshedToken(
            access_token_enc=self.codec.encrypt(new_tokens["access_token"]),
            token_expires_at=expires_at,
        )
        if new_tokens.get("refresh_token"):
            refreshed.refresh_token_enc = self.codec.encrypt(new_tokens["refresh_token"])
        return refreshed

    def build_client(self, access_token: str, refresh_token: str) -> GmailClient:
        return GmailClient(access_token=access_token, refresh_token=refresh_token)

    async def send(self, client: GmailClient, message: OutgoingMessage) -> Optional[str]:
        raw = encode_raw_message(build_mime_message(message).as_bytes())
        try:
            async with self._http() as http:
                res = await http.post(SEND_URI, json={"raw": raw}, headers=client.headers)
                res.raise_for_status()
                sent = _json_object(res)
        except httpx.HTTPStatusError as e:
            raise SendError(f"Gmail API rejected the message: {_error_detail(e.response)}") from e
        except httpx.HTTPError as e:
            raise SendError(f"Could not reach the Gmail API: {e}") from e
        except ValueError as e:
            raise SendError("Gmail API returned an unreadable response.") from e
        logger.info("Sent email from %s through the Gmail API", message.from_address)
        return sent.get("id")
