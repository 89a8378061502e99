# mailbox_core/api/endpoints/mailboxes.py
from typing import Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from mailbox_core.api import deps
from mailbox_core.core.config import settings
from mailbox_core.core.constants import ACCOUNTS_TABLE
from mailbox_core.core.errors import MailboxError, PersistenceError
from mailbox_core.core.logger import get_logger
from mailbox_core.schemas.account import ImapConnectRequest, LinkedMailbox
from mailbox_core.schemas.user import CurrentUser
from mailbox_core.services.connector import AccountConnector

logger = get_logger(__name__)

router = APIRouter()

def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.APP_URL.rstrip('/')}/settings?{urlencode(params)}")

@router.get("", response_model=list[LinkedMailbox])
async def list_mailboxes(current_user: CurrentUser = Depends(deps.get_current_user), store=Depends(deps.get_store)):
    """
    Lists the mailboxes the current user has connected. Credential columns are never selected.
    """
    rows = store.list(ACCOUNTS_TABLE, {"user_id": current_user.id},
                      columns="id, email_address, display_name, provider, status, created_at")
    return [LinkedMailbox(**row) for row in rows]

@router.post("/imap", status_code=201, response_model=LinkedMailbox)
async def connect_imap_mailbox(
    payload: ImapConnectRequest,
    current_user: CurrentUser = Depends(deps.get_current_user),
    connector: AccountConnector = Depends(deps.get_connector),
):
    account = await connector.connect_direct(current_user, payload)
    return LinkedMailbox(
        id=account.id,
        email_address=account.email_address,
        display_name=account.display_name,
        provider=account.kind,
        status=account.status,
    )

@router.get("/gmail/connect", response_model=dict)
async def get_gmail_connect_url(
    current_user: CurrentUser = Depends(deps.get_current_user),
    connector: AccountConnector = Depends(deps.get_connector),
):
    """
    Returns the Google consent URL. The state is the user's id so the callback
    can be tied back to them.
    """
    return {"authorization_url": connector.authorization_url(current_user)}

@router.get("/gmail/callback")
async def handle_gmail_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    current_user: Optional[CurrentUser] = Depends(deps.get_optional_user),
    connector: AccountConnector = Depends(deps.get_connector),
):
    """
    Handles the browser redirect from Google and sends the user back to the
    settings page with the outcome in the query string.
    """
    if not code or not state:
        return _settings_redirect(email_error="missing_code")
    if current_user is None or current_user.id != state:
        return _settings_redirect(email_error="unauthorized")

    try:
        await connector.connect_delegated(current_user, state=state, code=code)
    except PersistenceError as e:
        logger.error("Could not save Gmail account for user %s: %s", current_user.id, e.detail)
        return _settings_redirect(email_error="save_failed")
    except MailboxError as e:
        logger.error("Gmail callback failed for user %s: %s", current_user.id, e.detail)
        return _settings_redirect(email_error="gmail_oauth_failed")

    return _settings_redirect(email_connected="gmail")
