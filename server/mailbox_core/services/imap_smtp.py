import imaplib
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from fastapi.concurrency import run_in_threadpool

from mailbox_core.core.errors import CredentialValidationError, SendError
from mailbox_core.core.logger import get_logger
from mailbox_core.schemas.email import OutgoingMessage

logger = get_logger(__name__)

@dataclass
class SmtpConnection:
    host: str
    port: int
    secure: bool
    username: str
    password: str


def build_mime_message(message: OutgoingMessage) -> EmailMessage:
    """From/To/Subject plus a text and/or HTML body (multipart/alternative if both)."""
    msg = EmailMessage()
    msg["From"] = message.from_address
    msg["To"] = message.to
    msg["Subject"] = message.subject
    msg["Date"] = formatdate(localtime=False)
    msg["Message-ID"] = make_msgid()
    if message.text is not None and message.html is not None:
        msg.set_content(message.text, subtype="plain", charset="utf-8")
        msg.add_alternative(message.html, subtype="html", charset="utf-8")
    elif message.html is not None:
        msg.set_content(message.html, subtype="html", charset="utf-8")
    else:
        msg.set_content(message.text or "", subtype="plain", charset="utf-8")
    return msg


def _describe(exc: Exception) -> str:
    if isinstance(exc, smtplib.SMTPResponseException):
        detail = exc.smtp_error
        if hasattr(detail, "decode"):
            detail = detail.decode(errors="ignore")
        return f"{exc.smtp_code} {detail}"
    if isinstance(exc, imaplib.IMAP4.error) and exc.args:
        arg = exc.args[0]
        return arg.decode(errors="ignore") if isinstance(arg, bytes) else str(arg)
    return str(exc) or exc.__class__.__name__


class ImapSmtpProvider:
    """
    Username/password mailboxes. `validate` proves the credentials against
    IMAP before anything is stored; `send` delivers through SMTP.
    """
    def __init__(self, timeout: float = 20.0):
        self.timeout = timeout

    # --- IMAP validation ---
    def _open_imap(self, host: str, port: int, secure: bool) -> imaplib.IMAP4:
        if secure:
            return imaplib.IMAP4_SSL(host=host, port=port, ssl_context=ssl.create_default_context(),
                                     timeout=self.timeout)
        imap = imaplib.IMAP4(host=host, port=port, timeout=self.timeout)
        try:
            if "STARTTLS" in imap.capabilities:
                imap.starttls(ssl_context=ssl.create_default_context())
        except (imaplib.IMAP4.error, OSError):
            imap.shutdown()
            raise
        return imap

    def _validate_blocking(self, host: str, port: int, secure: bool, username: str, password: str):
        imap = None
        try:
            imap = self._open_imap(host, port, secure)
            imap.login(username, password)
            # Selecting INBOX read-only is the lock; closing releases it.
            status, data = imap.select("INBOX", readonly=True)
            if status != "OK":
                raise imaplib.IMAP4.error(f"Could not open INBOX: {data}")
            imap.close()
        except (imaplib.IMAP4.error, OSError) as e:
            raise CredentialValidationError(f"Could not connect to IMAP: {_describe(e)}") from e
        finally:
            if imap is not None:
                try:
                    imap.logout()
                except (imaplib.IMAP4.error, OSError):
                    imap.shutdown()

    async def validate(self, host: str, port: int, secure: bool, username: str, password: str) -> None:
        await run_in_threadpool(self._validate_blocking, host, port, secure, username, password)
        logger.info("IMAP credentials verified for %s:%s", host, port)

    # --- SMTP delivery ---
    def _open_smtp(self, conn: SmtpConnection) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if conn.secure:
            return smtplib.SMTP_SSL(conn.host, conn.port, timeout=self.timeout, context=context)
        smtp = smtplib.SMTP(conn.host, conn.port, timeout=self.timeout)
        try:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls(context=context)
                smtp.ehlo()
        except (smtplib.SMTPException, OSError):
            smtp.close()
            raise
        return smtp

    def _send_blocking(self, conn: SmtpConnection, message: OutgoingMessage) -> str:
        msg = build_mime_message(message)
        try:
            with self._open_smtp(conn) as server:
                server.login(conn.username, conn.password)
                refused = server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise SendError(f"Failed to send email: {_describe(e)}") from e
        if refused:
            raise SendError(f"Recipients refused: {', '.join(sorted(refused))}")
        return msg["Message-ID"]

    async def send(self, conn: SmtpConnection, message: OutgoingMessage) -> str:
        message_id = await run_in_threadpool(self._send_blocking, conn, message)
        logger.info("Sent email from %s via %s", message.from_address, conn.host)
        return message_id
