from fastapi import APIRouter

from mailbox_core.api.endpoints import emails, mailboxes

api_router = APIRouter()
api_router.include_router(mailboxes.router, prefix="/mailboxes", tags=["mailboxes"])
api_router.include_router(emails.router, prefix="/emails", tags=["emails"])
