from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt
from cryptography.fernet import Fernet, InvalidToken
from .errors import ConfigurationError, DecryptionError

# --- Credential encryption for stored mailbox secrets ---
class SecretCodec:
    """
    Encrypts passwords and OAuth tokens before they reach storage.

    Fernet gives authenticated encryption (AES-CBC + HMAC-SHA256) with a
    fresh random IV per call, stored inside the token itself. The key is
    handed in by the caller; nothing here reads the environment.
    """
    def __init__(self, key: Optional[str]):
        if not key or not key.strip():
            raise ConfigurationError("EMAIL_ENCRYPTION_KEY is not configured.")
        try:
            self._fernet = Fernet(key.strip().encode())
        except (ValueError, TypeError):
            # Never echo the key back in the message.
            raise ConfigurationError(
                "EMAIL_ENCRYPTION_KEY must be a urlsafe base64-encoded 32-byte key."
            ) from None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("Stored credential is empty.")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError):
            raise DecryptionError("Stored credential could not be decrypted.") from None

# --- JWT Token Handling ---
def create_access_token(data: dict, secret_key: str, algorithm: str = "HS256",
                        expires_delta: Optional[timedelta] = None) -> str:
    """Creates a JSON Web Token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)
