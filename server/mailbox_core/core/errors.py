"""Error taxonomy shared by every mailbox operation.

Each error carries a stable ``kind`` for machines and a ``detail`` for
humans. The HTTP layer renders them through a single exception handler,
so services raise these instead of ``HTTPException``.
"""

from typing import Optional


class MailboxError(Exception):
    kind = "mailbox_error"
    status_code = 500
    # Operational errors are logged server side and hidden from the caller.
    public_detail: Optional[str] = None

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__

    def client_detail(self) -> str:
        return self.public_detail or self.detail


class ConfigurationError(MailboxError):
    """The encryption key (or another required setting) is missing or invalid."""
    kind = "configuration_error"
    status_code = 503
    public_detail = "Service unavailable"


class ValidationError(MailboxError):
    kind = "validation_error"
    status_code = 400


class CredentialValidationError(MailboxError):
    """The mail server or OAuth provider rejected the candidate credentials."""
    kind = "credential_validation_error"
    status_code = 400


class DecryptionError(MailboxError):
    kind = "decryption_error"
    status_code = 503
    public_detail = "Service unavailable"


class TokenRefreshError(MailboxError):
    """The refresh token is invalid or revoked. The user has to reconnect."""
    kind = "token_refresh_error"
    status_code = 401


class NoValidCredentialError(MailboxError):
    kind = "no_valid_credential"
    status_code = 400


class SendError(MailboxError):
    kind = "send_error"
    status_code = 502


class PersistenceError(MailboxError):
    kind = "persistence_error"
    status_code = 500


class NotFoundError(MailboxError):
    kind = "not_found"
    status_code = 404


# Failures that make the account unusable until the user reconnects it.
TERMINAL_CREDENTIAL_ERRORS = (TokenRefreshError, NoValidCredentialError)
