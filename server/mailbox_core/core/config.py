from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    JWT_SECRET_KEY: Optional[str] = None
    ALGORITHM: str = "HS256"

    # Fernet key (urlsafe base64, 32 bytes) used for every stored credential
    EMAIL_ENCRYPTION_KEY: Optional[str] = None

    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None

    # Google OAuth Credentials
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None
    GOOGLE_REDIRECT_URI: Optional[str] = None

    APP_URL: str = "http://localhost:3000"
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    TOKEN_REFRESH_SKEW_SECONDS: int = 60
    NETWORK_TIMEOUT_SECONDS: float = 20.0
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()
