from typing import Any, Optional

from mailbox_core.core.constants import ACCOUNTS_TABLE, MAX_PORT, MIN_PORT, AccountStatus
from mailbox_core.core.errors import ValidationError
from mailbox_core.core.logger import get_logger
from mailbox_core.core.security import SecretCodec
from mailbox_core.schemas.account import (
    DelegatedCredentials,
    DirectCredentials,
    ImapConnectRequest,
    MailboxAccount,
)
from mailbox_core.schemas.user import CurrentUser
from mailbox_core.services.gmail import GmailProvider
from mailbox_core.services.imap_smtp import ImapSmtpProvider

logger = get_logger(__name__)


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_bool(value: Any) -> bool:
    """Only a literal true or 1 counts as set."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1")
    return value is True or (type(value) is int and value == 1)


def parse_port(value: Any, label: str) -> int:
    port = None
    if isinstance(value, int) and not isinstance(value, bool):
        port = value
    elif isinstance(value, float) and value.is_integer():
        port = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        port = int(value.strip())
    if port is None or not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(f"{label} port must be between {MIN_PORT} and {MAX_PORT}")
    return port


class AccountConnector:
    """
    Creates mailbox accounts. Nothing is written until the credentials have
    been proven: a live IMAP login for Direct accounts, a successful code
    exchange for Gmail.
    """
    def __init__(self, store, codec: SecretCodec, direct: ImapSmtpProvider, gmail: GmailProvider):
        self.store = store
        self.codec = codec
        self.direct = direct
        self.gmail = gmail

    def _persist(self, account: MailboxAccount) -> MailboxAccount:
        record = self.store.insert(ACCOUNTS_TABLE, account.to_record())
        saved = MailboxAccount.from_record(record)
        logger.info("Connected %s mailbox %s for user %s", saved.kind.value, saved.id, saved.user_id)
        return saved

    async def connect_direct(self, user: CurrentUser, candidate: ImapConnectRequest) -> MailboxAccount:
        email = _clean(candidate.email)
        imap_host = _clean(candidate.imap_host)
        smtp_host = _clean(candidate.smtp_host)
        username = _clean(candidate.username)
        # Passwords are taken verbatim; whitespace can be part of them.
        password = candidate.password if isinstance(candidate.password, str) else ""

        if not email or not imap_host or not smtp_host or not username or not password.strip():
            raise ValidationError("Missing required fields")

        imap_port = parse_port(candidate.imap_port, "IMAP")
        smtp_port = parse_port(candidate.smtp_port, "SMTP")
        imap_secure = parse_bool(candidate.imap_secure)
        smtp_secure = parse_bool(candidate.smtp_secure)

        await self.direct.validate(imap_host, imap_port, imap_secure, username, password)

        account = MailboxAccount(
            id="",
            user_id=user.id,
            email_address=email,
            display_name=user.name,
            status=AccountStatus.CONNECTED,
            credentials=DirectCredentials(
                imap_host=imap_host,
                imap_port=imap_port,
                imap_tls=imap_secure,
                smtp_host=smtp_host,
                smtp_port=smtp_port,
                smtp_secure=smtp_secure,
                username_enc=self.codec.encrypt(username),
                password_enc=self.codec.encrypt(password),
            ),
        )
        return self._persist(account)

    def authorization_url(self, user: CurrentUser) -> str:
        return self.gmail.build_authorization_url(state=user.id, login_hint=user.email)

    async def connect_delegated(self, user: CurrentUser, state: Optional[str], code: Optional[str]) -> MailboxAccount:
        state = _clean(state)
        code = _clean(code)
        if not code or not state:
            raise ValidationError("Authorization code not found in redirect.")
        if state != user.id:
            raise ValidationError("OAuth state does not belong to the signed-in user.")

        grant = await self.gmail.exchange_code(code)
        account = MailboxAccount(
            id="",
            user_id=user.id,
            email_address=grant.email or user.email or "",
            display_name=user.name,
            status=AccountStatus.CONNECTED,
            credentials=DelegatedCredentials(
                access_token_enc=grant.access_token_enc,
                refresh_token_enc=grant.refresh_token_enc,
                token_expires_at=grant.token_expires_at,
                provider_account_id=grant.provider_account_id,
            ),
        )
        if not account.email_address:
            raise ValidationError("Could not determine the Gmail address for this account.")
        return self._persist(account)
