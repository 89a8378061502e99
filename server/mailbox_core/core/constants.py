from enum import Enum

class AccountKind(str, Enum):
    """
    How a mailbox authenticates and transports mail. The values are the
    ones stored in the `provider` column of `mailbox_accounts`.
    """
    DELEGATED = "gmail"
    DIRECT = "imap_smtp"

class AccountStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"

class Direction(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"

ACCOUNTS_TABLE = "mailbox_accounts"
MESSAGES_TABLE = "mailbox_messages"

MIN_PORT = 1
MAX_PORT = 65535
