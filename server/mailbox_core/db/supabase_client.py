from functools import lru_cache
from supabase import Client, create_client

from mailbox_core.core.config import settings
from mailbox_core.core.errors import ConfigurationError

@lru_cache(maxsize=1)
def get_supabase() -> Client:
    if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
        raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY must be configured.")
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
