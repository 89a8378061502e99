from functools import lru_cache
from typing import Optional
from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from mailbox_core.core.config import settings
from mailbox_core.core.errors import ConfigurationError
from mailbox_core.core.security import SecretCodec
from mailbox_core.db.store import SupabaseStore
from mailbox_core.db.supabase_client import get_supabase
from mailbox_core.schemas.token import TokenData
from mailbox_core.schemas.user import CurrentUser
from mailbox_core.services.connector import AccountConnector
from mailbox_core.services.dispatcher import MailDispatcher
from mailbox_core.services.gmail import GmailProvider
from mailbox_core.services.imap_smtp import ImapSmtpProvider
from mailbox_core.services.token_manager import TokenLifecycleManager

# The external auth layer issues these tokens; browsers carry them in a cookie
# on the OAuth redirect, API clients in the Authorization header.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

def _decode_user(token: Optional[str]) -> Optional[CurrentUser]:
    if not token:
        return None
    if not settings.JWT_SECRET_KEY:
        raise ConfigurationError("JWT_SECRET_KEY is not configured.")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.ALGORITHM])
        token_data = TokenData(**payload)
    except (JWTError, ValidationError):
        return None
    return CurrentUser(id=token_data.sub, email=token_data.email, name=token_data.name)

async def get_optional_user(
    token: Optional[str] = Depends(oauth2_scheme),
    access_token: Optional[str] = Cookie(None),
) -> Optional[CurrentUser]:
    return _decode_user(token or access_token)

async def get_current_user(user: Optional[CurrentUser] = Depends(get_optional_user)) -> CurrentUser:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

# --- Service wiring. Cached instances are process-wide; the token manager's
# per-account locks only work if every request shares the same one. ---

@lru_cache(maxsize=1)
def get_codec() -> SecretCodec:
    return SecretCodec(settings.EMAIL_ENCRYPTION_KEY)

@lru_cache(maxsize=1)
def get_store() -> SupabaseStore:
    return SupabaseStore(get_supabase())

@lru_cache(maxsize=1)
def get_direct_provider() -> ImapSmtpProvider:
    return ImapSmtpProvider(timeout=settings.NETWORK_TIMEOUT_SECONDS)

@lru_cache(maxsize=1)
def get_gmail_provider() -> GmailProvider:
    return GmailProvider(
        codec=get_codec(),
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        redirect_uri=settings.GOOGLE_REDIRECT_URI,
        timeout=settings.NETWORK_TIMEOUT_SECONDS,
    )

@lru_cache(maxsize=1)
def get_token_manager() -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store=get_store(),
        provider=get_gmail_provider(),
        skew_seconds=settings.TOKEN_REFRESH_SKEW_SECONDS,
    )

def get_connector() -> AccountConnector:
    return AccountConnector(
        store=get_store(),
        codec=get_codec(),
        direct=get_direct_provider(),
        gmail=get_gmail_provider(),
    )

def get_dispatcher() -> MailDispatcher:
    return MailDispatcher(
        store=get_store(),
        codec=get_codec(),
        direct=get_direct_provider(),
        gmail=get_gmail_provider(),
        tokens=get_token_manager(),
    )
