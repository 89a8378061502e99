import asyncio
import imaplib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from mailbox_core.core.constants import AccountKind, AccountStatus
from mailbox_core.core.errors import PersistenceError
from mailbox_core.core.security import SecretCodec
from mailbox_core.services import imap_smtp
from mailbox_core.services.gmail import GmailClient, RefreshedToken


class MemoryStore:
    """Row store kept in dicts, with the same surface as SupabaseStore."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail_insert_into: str | None = None
        self.updates: list[tuple] = []

    def rows(self, table):
        return self.tables.setdefault(table, [])

    @staticmethod
    def _matches(row, filters):
        return all(row.get(column) == value for column, value in filters.items())

    def get(self, table, filters):
        for row in self.rows(table):
            if self._matches(row, filters):
                return dict(row)
        return None

    def list(self, table, filters, columns="*"):
        found = [dict(row) for row in self.rows(table) if self._matches(row, filters)]
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            found = [{c: row.get(c) for c in wanted} for row in found]
        return found

    def insert(self, table, record):
        if self.fail_insert_into == table:
            raise PersistenceError(f"Could not save to {table}.")
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        self.rows(table).append(row)
        return dict(row)

    def update(self, table, filters, patch):
        self.updates.append((table, dict(filters), dict(patch)))
        changed = []
        for row in self.rows(table):
            if self._matches(row, filters):
                row.update(patch)
                changed.append(dict(row))
        return changed


class DummyDirectProvider:
    """Stands in for ImapSmtpProvider and records every call."""

    def __init__(self):
        self.validations: list[tuple] = []
        self.sent: list[tuple] = []
        self.validate_error: Exception | None = None
        self.send_error: Exception | None = None

    async def validate(self, host, port, secure, username, password):
        self.validations.append((host, port, secure, username, password))
        if self.validate_error:
            raise self.validate_error

    async def send(self, conn, message):
        if self.send_error:
            raise self.send_error
        self.sent.append((conn, message))
        return f"<{len(self.sent)}@test>"


class DummyGmailProvider:
    """Stands in for GmailProvider; refreshes yield to the loop like real I/O."""

    def __init__(self, codec, expires_in=3600):
        self.codec = codec
        self.expires_in = expires_in
        self.refresh_calls: list[str] = []
        self.sent: list[tuple] = []
        self.refresh_error: Exception | None = None

    async def refresh_access_token(self, refresh_token_enc):
        self.refresh_calls.append(self.codec.decrypt(refresh_token_enc))
        await asyncio.sleep(0.01)
        if self.refresh_error:
            raise self.refresh_error
        return RefreshedToken(
            access_token_enc=self.codec.encrypt(f"access-{len(self.refresh_calls)}"),
            token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.expires_in),
        )

    def build_client(self, access_token, refresh_token):
        return GmailClient(access_token=access_token, refresh_token=refresh_token)

    async def send(self, client, message):
        self.sent.append((client, message))
        return "gm-1"


class FakeIMAP:
    # Stands in for both IMAP4 and IMAP4_SSL, so it must carry the error class too.
    error = imaplib.IMAP4.error
    instances: list = []
    capabilities = ("IMAP4REV1", "STARTTLS")
    login_error = None
    starttls_error = None

    def __init__(self, host="", port=993, ssl_context=None, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        type(self).instances.append(self)

    def starttls(self, ssl_context=None):
        self.calls.append("starttls")
        if self.starttls_error:
            raise self.starttls_error

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if self.login_error:
            raise self.login_error

    def select(self, mailbox="INBOX", readonly=False):
        self.calls.append(("select", mailbox, readonly))
        return "OK", [b"3"]

    def close(self):
        self.calls.append("close")

    def logout(self):
        self.calls.append("logout")

    def shutdown(self):
        self.calls.append("shutdown")


class FakeSMTP:
    instances: list = []
    refused: dict = {}
    login_error = None
    extensions = ("starttls",)

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        self.messages = []
        type(self).instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.calls.append("quit")
        return False

    def ehlo(self):
        self.calls.append("ehlo")

    def has_extn(self, name):
        return name in self.extensions

    def starttls(self, context=None):
        self.calls.append("starttls")

    def close(self):
        self.calls.append("close")

    def login(self, user, password):
        self.calls.append(("login", user, password))
        if self.login_error:
            raise self.login_error

    def send_message(self, msg):
        self.messages.append(msg)
        return dict(self.refused)


@pytest.fixture
def fake_imap(monkeypatch):
    cls = type("IMAP", (FakeIMAP,), {"instances": []})
    monkeypatch.setattr(imap_smtp.imaplib, "IMAP4_SSL", cls)
    monkeypatch.setattr(imap_smtp.imaplib, "IMAP4", cls)
    return cls


@pytest.fixture
def fake_smtp(monkeypatch):
    cls = type("SMTP", (FakeSMTP,), {"instances": []})
    monkeypatch.setattr(imap_smtp.smtplib, "SMTP_SSL", cls)
    monkeypatch.setattr(imap_smtp.smtplib, "SMTP", cls)
    return cls


@pytest.fixture
def codec():
    return SecretCodec(SecretCodec.generate_key())


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def direct_provider():
    return DummyDirectProvider()


@pytest.fixture
def gmail_provider(codec):
    return DummyGmailProvider(codec)


@pytest.fixture
def direct_row(codec, store):
    """Inserts a connected IMAP/SMTP account and returns its row."""
    def _make(user_id="user-1", email="me@example.com", **overrides):
        row = {
            "user_id": user_id,
            "email_address": email,
            "display_name": "Me",
            "provider": AccountKind.DIRECT.value,
            "status": AccountStatus.CONNECTED.value,
            "imap_host": "imap.example.com",
            "imap_port": 993,
            "imap_tls": True,
            "smtp_host": "smtp.example.com",
            "smtp_port": 465,
            "smtp_secure": True,
            "username_enc": codec.encrypt("me"),
            "password_enc": codec.encrypt("hunter2"),
        }
        row.update(overrides)
        return store.insert("mailbox_accounts", row)
    return _make


@pytest.fixture
def delegated_row(codec, store):
    """Inserts a Gmail account; `expires_in` is seconds from now (negative = expired)."""
    def _make(user_id="user-1", email="me@gmail.com", access_token="access-0",
              refresh_token="refresh-0", expires_in=3600, **overrides):
        expires_at = None
        if expires_in is not None:
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=expires_in)).isoformat()
        row = {
            "user_id": user_id,
            "email_address": email,
            "display_name": None,
            "provider": AccountKind.DELEGATED.value,
            "status": AccountStatus.CONNECTED.value,
            "access_token_enc": codec.encrypt(access_token) if access_token else None,
            "refresh_token_enc": codec.encrypt(refresh_token) if refresh_token else None,
            "token_expires_at": expires_at,
        }
        row.update(overrides)
        return store.insert("mailbox_accounts", row)
    return _make
