from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from mailbox_core.api import deps
from mailbox_core.core.config import settings
from mailbox_core.core.errors import ConfigurationError, CredentialValidationError, PersistenceError
from mailbox_core.core.security import create_access_token
from mailbox_core.main import app
from mailbox_core.schemas.user import CurrentUser
from mailbox_core.services.connector import AccountConnector
from mailbox_core.services.dispatcher import MailDispatcher
from mailbox_core.services.gmail import TokenGrant
from mailbox_core.services.token_manager import TokenLifecycleManager

USER = CurrentUser(id="user-1", email="owner@example.com", name="Owner")

IMAP_PAYLOAD = {
    "email": "me@example.com",
    "imapHost": "imap.example.com",
    "imapPort": 993,
    "imapSecure": True,
    "smtpHost": "smtp.example.com",
    "smtpPort": 465,
    "smtpSecure": True,
    "username": "me",
    "password": "hunter2",
}


class CallbackGmail:
    def __init__(self, codec, error=None):
        self.codec = codec
        self.error = error
        self.codes = []

    def build_authorization_url(self, state, login_hint=None):
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code):
        self.codes.append(code)
        if self.error:
            raise self.error
        return TokenGrant(
            email="me@gmail.com",
            provider_account_id="1098",
            access_token_enc=self.codec.encrypt("ya29.first"),
            refresh_token_enc=self.codec.encrypt("1//first"),
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )


@pytest.fixture
def client(store, codec, direct_provider, gmail_provider):
    tokens = TokenLifecycleManager(store=store, provider=gmail_provider)
    app.dependency_overrides[deps.get_store] = lambda: store
    app.dependency_overrides[deps.get_connector] = lambda: AccountConnector(
        store=store, codec=codec, direct=direct_provider, gmail=CallbackGmail(codec))
    app.dependency_overrides[deps.get_dispatcher] = lambda: MailDispatcher(
        store=store, codec=codec, direct=direct_provider, gmail=gmail_provider, tokens=tokens)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def signed_in(client):
    app.dependency_overrides[deps.get_current_user] = lambda: USER
    app.dependency_overrides[deps.get_optional_user] = lambda: USER
    return client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "running" in response.json()["status"]


@pytest.mark.parametrize("method,path", [
    ("get", "/api/mailboxes"),
    ("post", "/api/mailboxes/imap"),
    ("get", "/api/mailboxes/gmail/connect"),
    ("post", "/api/emails/send"),
])
def test_routes_require_a_signed_in_user(client, method, path):
    kwargs = {"json": {}} if method == "post" else {}
    response = getattr(client, method)(path, **kwargs)
    assert response.status_code == 401


def test_bearer_token_identifies_the_user(client, store, direct_row, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", "test-secret")
    direct_row(user_id="user-1")
    direct_row(user_id="user-2", email="other@example.com")
    token = create_access_token({"sub": "user-1", "email": "owner@example.com"}, "test-secret")

    response = client.get("/api/mailboxes", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert [m["email_address"] for m in response.json()] == ["me@example.com"]


def test_token_signed_with_another_key_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", "test-secret")
    token = create_access_token({"sub": "user-1"}, "not-the-secret")
    response = client.get("/api/mailboxes", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_listing_never_exposes_credentials(signed_in, direct_row, delegated_row):
    direct_row()
    delegated_row()

    response = signed_in.get("/api/mailboxes")

    assert response.status_code == 200
    mailboxes = response.json()
    assert {m["provider"] for m in mailboxes} == {"imap_smtp", "gmail"}
    for mailbox in mailboxes:
        assert not any(key.endswith("_enc") for key in mailbox)
        assert "imap_host" not in mailbox


def test_connect_imap_creates_account(signed_in, store, direct_provider):
    response = signed_in.post("/api/mailboxes/imap", json=IMAP_PAYLOAD)

    assert response.status_code == 201
    body = response.json()
    assert body["email_address"] == "me@example.com"
    assert body["provider"] == "imap_smtp"
    assert body["status"] == "connected"
    assert "password_enc" not in body
    assert len(store.rows("mailbox_accounts")) == 1


def test_connect_imap_bad_port_is_a_validation_error(signed_in, store, direct_provider):
    response = signed_in.post("/api/mailboxes/imap", json={**IMAP_PAYLOAD, "imapPort": 70000})

    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"
    assert "between 1 and 65535" in response.json()["detail"]
    assert direct_provider.validations == []


def test_connect_imap_rejected_login(signed_in, store, direct_provider):
    direct_provider.validate_error = CredentialValidationError("Could not connect to IMAP: AUTHENTICATIONFAILED")

    response = signed_in.post("/api/mailboxes/imap", json=IMAP_PAYLOAD)

    assert response.status_code == 400
    assert response.json() == {
        "error": "credential_validation_error",
        "detail": "Could not connect to IMAP: AUTHENTICATIONFAILED",
    }
    assert store.rows("mailbox_accounts") == []


def test_configuration_problems_are_not_leaked(signed_in):
    def broken():
        raise ConfigurationError("EMAIL_ENCRYPTION_KEY is not configured.")
    app.dependency_overrides[deps.get_connector] = broken

    response = signed_in.post("/api/mailboxes/imap", json=IMAP_PAYLOAD)

    assert response.status_code == 503
    assert response.json() == {"error": "configuration_error", "detail": "Service unavailable"}


def test_gmail_connect_returns_consent_url(signed_in):
    response = signed_in.get("/api/mailboxes/gmail/connect")
    assert response.status_code == 200
    assert response.json()["authorization_url"].endswith("state=user-1")


def _redirect_params(response):
    assert response.status_code in (302, 307)
    location = urlparse(response.headers["location"])
    assert location.path == "/settings"
    return {k: v[0] for k, v in parse_qs(location.query).items()}


def test_gmail_callback_without_code(signed_in):
    response = signed_in.get("/api/mailboxes/gmail/callback", params={"state": "user-1"},
                             follow_redirects=False)
    assert _redirect_params(response) == {"email_error": "missing_code"}


def test_gmail_callback_for_someone_else(signed_in):
    response = signed_in.get("/api/mailboxes/gmail/callback", params={"code": "4/code", "state": "user-2"},
                             follow_redirects=False)
    assert _redirect_params(response) == {"email_error": "unauthorized"}


def test_gmail_callback_without_session(client):
    response = client.get("/api/mailboxes/gmail/callback", params={"code": "4/code", "state": "user-1"},
                          follow_redirects=False)
    assert _redirect_params(response) == {"email_error": "unauthorized"}


@pytest.mark.parametrize("error,reason", [
    (CredentialValidationError("Error exchanging code with Google: invalid_grant"), "gmail_oauth_failed"),
    (PersistenceError("Could not save to mailbox_accounts."), "save_failed"),
])
def test_gmail_callback_failures(signed_in, store, codec, direct_provider, error, reason):
    gmail = CallbackGmail(codec, error)
    app.dependency_overrides[deps.get_connector] = lambda: AccountConnector(
        store=store, codec=codec, direct=direct_provider, gmail=gmail)

    response = signed_in.get("/api/mailboxes/gmail/callback", params={"code": "4/code", "state": "user-1"},
                             follow_redirects=False)

    assert _redirect_params(response) == {"email_error": reason}
    assert gmail.codes == ["4/code"]


def test_gmail_callback_success(signed_in, store, codec, direct_provider):
    app.dependency_overrides[deps.get_connector] = lambda: AccountConnector(
        store=store, codec=codec, direct=direct_provider, gmail=CallbackGmail(codec))

    response = signed_in.get("/api/mailboxes/gmail/callback", params={"code": "4/code", "state": "user-1"},
                             follow_redirects=False)

    assert _redirect_params(response) == {"email_connected": "gmail"}
    assert store.rows("mailbox_accounts")[0]["provider"] == "gmail"


def test_send_email(signed_in, store, direct_row, direct_provider):
    row = direct_row()

    response = signed_in.post("/api/emails/send", json={
        "mailboxAccountId": row["id"], "to": "a@b.com", "subject": "Hi", "text": "Hello",
    })

    assert response.status_code == 200
    record = store.rows("mailbox_messages")[0]
    assert response.json() == {"ok": True, "message_id": record["id"]}
    assert len(direct_provider.sent) == 1


def test_send_from_unknown_account(signed_in, store):
    response = signed_in.post("/api/emails/send", json={
        "mailboxAccountId": "missing", "to": "a@b.com", "subject": "Hi",
    })
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
    assert store.rows("mailbox_messages") == []


def test_send_without_subject(signed_in, direct_row):
    row = direct_row()
    response = signed_in.post("/api/emails/send", json={"mailboxAccountId": row["id"], "to": "a@b.com"})
    assert response.status_code == 400
    assert response.json() == {"error": "validation_error", "detail": "Missing required fields"}
