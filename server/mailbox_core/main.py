from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailbox_core.api.api import api_router
from mailbox_core.core.config import settings
from mailbox_core.core.errors import ConfigurationError, DecryptionError, MailboxError
from mailbox_core.core.logger import configure_logging, get_logger

configure_logging(settings.LOG_LEVEL)
logger = get_logger(__name__)

app = FastAPI(
    title="Mailbox Integration API",
    description="Connects external mailboxes and sends mail through them."
)

# --- CORS Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error rendering ---
@app.exception_handler(MailboxError)
async def mailbox_error_handler(request: Request, exc: MailboxError):
    if isinstance(exc, (ConfigurationError, DecryptionError)):
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.client_detail()},
    )

# --- API Routers ---
app.include_router(api_router, prefix="/api")

@app.get("/")
def read_root():
    return {"status": "Mailbox Integration API is running"}
