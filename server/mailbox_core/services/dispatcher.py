from datetime import datetime, timezone
from typing import Callable, Optional

from mailbox_core.core.constants import ACCOUNTS_TABLE, MESSAGES_TABLE, AccountStatus, Direction
from mailbox_core.core.errors import (
    TERMINAL_CREDENTIAL_ERRORS,
    NoValidCredentialError,
    NotFoundError,
    PersistenceError,
    SendError,
    ValidationError,
)
from mailbox_core.core.logger import get_logger
from mailbox_core.core.security import SecretCodec
from mailbox_core.schemas.account import DelegatedCredentials, DirectCredentials, MailboxAccount
from mailbox_core.schemas.email import OutgoingMessage, SentMessageRecord
from mailbox_core.services.gmail import GmailProvider
from mailbox_core.services.imap_smtp import ImapSmtpProvider, SmtpConnection
from mailbox_core.services.token_manager import TokenLifecycleManager

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _required(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


class MailDispatcher:
    """
    Single entry point for outgoing mail.

    Only successful sends are recorded in `mailbox_messages`. Failures are
    logged and raised; nothing is retried here because a send is not
    idempotent.
    """
    def __init__(self, store, codec: SecretCodec, direct: ImapSmtpProvider, gmail: GmailProvider,
                 tokens: TokenLifecycleManager, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.codec = codec
        self.direct = direct
        self.gmail = gmail
        self.tokens = tokens
        self.clock = clock

    def resolve_account(self, user_id: str, account_id: str) -> MailboxAccount:
        record = self.store.get(ACCOUNTS_TABLE, {"id": account_id, "user_id": user_id})
        if not record:
            raise NotFoundError("Mailbox account not found")
        return MailboxAccount.from_record(record)

    async def _send_delegated(self, account: MailboxAccount, message: OutgoingMessage) -> Optional[str]:
        creds = await self.tokens.ensure_fresh(account)
        access_token = self.codec.decrypt(creds.access_token_enc)
        refresh_token = self.codec.decrypt(creds.refresh_token_enc) if creds.refresh_token_enc else ""
        client = self.gmail.build_client(access_token, refresh_token)
        return await self.gmail.send(client, message)

    async def _send_direct(self, creds: DirectCredentials, message: OutgoingMessage) -> Optional[str]:
        conn = SmtpConnection(
            host=creds.smtp_host,
            port=creds.smtp_port,
            secure=creds.smtp_secure,
            username=self.codec.decrypt(creds.username_enc),
            password=self.codec.decrypt(creds.password_enc),
        )
        return await self.direct.send(conn, message)

    def _mark_error(self, account: MailboxAccount):
        try:
            self.store.update(ACCOUNTS_TABLE, {"id": account.id, "user_id": account.user_id},
                              {"status": AccountStatus.ERROR.value})
        except PersistenceError as e:
            logger.error("Could not flag account %s as errored: %s", account.id, e.detail)

    def _record(self, account: MailboxAccount, message: OutgoingMessage,
                provider_message_id: Optional[str]) -> SentMessageRecord:
        now = self.clock()
        record = SentMessageRecord(
            mailbox_account_id=account.id,
            user_id=account.user_id,
            direction=Direction.OUTGOING,
            to_addresses=message.to,
            from_address=message.from_address,
            subject=message.subject,
            body_text=message.text or None,
            body_html=message.html or None,
            sent_at=now,
            received_at=now,
            is_read=True,
        )
        row = record.model_dump(mode="json", exclude={"id"})
        row["provider_message_id"] = provider_message_id
        saved = self.store.insert(MESSAGES_TABLE, row)
        return record.model_copy(update={"id": str(saved["id"]) if saved.get("id") is not None else None})

    async def send(self, user_id: str, account_id: Optional[str], to: Optional[str], subject: Optional[str],
                   text: Optional[str] = None, html: Optional[str] = None) -> SentMessageRecord:
        account_id, to, subject = _required(account_id), _required(to), _required(subject)
        if not account_id or not to or not subject:
            raise ValidationError("Missing required fields")
        if any(c in to + subject for c in "\r\n"):
            raise ValidationError("Recipient and subject must be single-line values")

        account = self.resolve_account(user_id, account_id)
        message = OutgoingMessage(from_address=account.email_address, to=to, subject=subject,
                                  text=text, html=html)
        creds = account.credentials
        if isinstance(creds, DelegatedCredentials) and account.status is AccountStatus.ERROR:
            # Only a reconnect clears this; the stored refresh token was already rejected.
            logger.info("Refusing send from account %s until it is reconnected", account.id)
            raise NoValidCredentialError("Mailbox needs to be reconnected before it can send.")
        try:
            if isinstance(creds, DelegatedCredentials):
                provider_message_id = await self._send_delegated(account, message)
            elif isinstance(creds, DirectCredentials):
                provider_message_id = await self._send_direct(creds, message)
            else:
                raise ValidationError(f"Unsupported provider: {account.kind}")
        except TERMINAL_CREDENTIAL_ERRORS as e:
            logger.warning("Account %s can no longer send (%s); user must reconnect", account.id, e.kind)
            self._mark_error(account)
            raise
        except SendError as e:
            logger.warning("Send from account %s failed: %s", account.id, e.detail)
            raise

        return self._record(account, message, provider_message_id)
