# mailbox_core/schemas/account.py
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from dateutil import parser
from pydantic import BaseModel, Field

from mailbox_core.core.constants import AccountKind, AccountStatus
from mailbox_core.core.errors import NoValidCredentialError


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Reads a stored timestamp, treating naive values as UTC."""
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else parser.isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


class DirectCredentials(BaseModel):
    """IMAP/SMTP settings; username and password are stored encrypted."""
    kind: Literal[AccountKind.DIRECT] = AccountKind.DIRECT
    imap_host: str
    imap_port: int
    imap_tls: bool
    smtp_host: str
    smtp_port: int
    smtp_secure: bool
    username_enc: str
    password_enc: str


class DelegatedCredentials(BaseModel):
    """OAuth tokens, stored encrypted. The access token may be absent."""
    kind: Literal[AccountKind.DELEGATED] = AccountKind.DELEGATED
    access_token_enc: Optional[str] = None
    refresh_token_enc: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    provider_account_id: Optional[str] = None


Credentials = Annotated[
    Union[DirectCredentials, DelegatedCredentials], Field(discriminator="kind")
]


class MailboxAccount(BaseModel):
    id: str
    user_id: str
    email_address: str
    display_name: Optional[str] = None
    status: AccountStatus = AccountStatus.CONNECTED
    credentials: Credentials

    @property
    def kind(self) -> AccountKind:
        return self.credentials.kind

    @classmethod
    def from_record(cls, record: dict) -> "MailboxAccount":
        """Builds the tagged account from a flat `mailbox_accounts` row."""
        try:
            kind = AccountKind(record.get("provider"))
        except ValueError:
            raise NoValidCredentialError(f"Unsupported provider: {record.get('provider')}") from None
        if kind is AccountKind.DIRECT:
            credentials = DirectCredentials(
                imap_host=record["imap_host"],
                imap_port=int(record["imap_port"]),
                imap_tls=bool(record.get("imap_tls")),
                smtp_host=record["smtp_host"],
                smtp_port=int(record["smtp_port"]),
                smtp_secure=bool(record.get("smtp_secure")),
                username_enc=record["username_enc"],
                password_enc=record["password_enc"],
            )
        else:
            credentials = DelegatedCredentials(
                access_token_enc=record.get("access_token_enc") or None,
                refresh_token_enc=record.get("refresh_token_enc") or None,
                token_expires_at=parse_timestamp(record.get("token_expires_at")),
                provider_account_id=record.get("provider_account_id"),
            )
        return cls(
            id=str(record["id"]),
            user_id=str(record["user_id"]),
            email_address=record["email_address"],
            display_name=record.get("display_name"),
            status=AccountStatus(record.get("status") or AccountStatus.CONNECTED),
            credentials=credentials,
        )

    def to_record(self) -> dict:
        """Flattens the account back into a row; the id is left to storage."""
        record = {
            "user_id": self.user_id,
            "email_address": self.email_address,
            "display_name": self.display_name,
            "provider": self.kind.value,
            "status": self.status.value,
        }
        creds = self.credentials
        if isinstance(creds, DirectCredentials):
            record.update(creds.model_dump(exclude={"kind"}))
        else:
            record.update({
                "access_token_enc": creds.access_token_enc,
                "refresh_token_enc": creds.refresh_token_enc,
                "token_expires_at": format_timestamp(creds.token_expires_at),
                "provider_account_id": creds.provider_account_id,
            })
        return record


class LinkedMailbox(BaseModel):
    """What the API shows about an account. No credential columns."""
    id: str
    email_address: str
    display_name: Optional[str] = None
    provider: AccountKind
    status: AccountStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImapConnectRequest(BaseModel):
    """
    Direct connector input. Everything is optional here so that blank or
    malformed values reach the connector and fail with its own errors.
    """
    email: Optional[str] = None
    imap_host: Optional[str] = Field(None, alias="imapHost")
    imap_port: Optional[Any] = Field(None, alias="imapPort")
    imap_secure: Optional[Any] = Field(None, alias="imapSecure")
    smtp_host: Optional[str] = Field(None, alias="smtpHost")
    smtp_port: Optional[Any] = Field(None, alias="smtpPort")
    smtp_secure: Optional[Any] = Field(None, alias="smtpSecure")
    username: Optional[str] = None
    password: Optional[str] = None

    class Config:
        populate_by_name = True
