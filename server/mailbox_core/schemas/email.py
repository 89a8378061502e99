from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from mailbox_core.core.constants import Direction

class OutgoingMessage(BaseModel):
    from_address: str
    to: str
    subject: str
    text: Optional[str] = None
    html: Optional[str] = None

class EmailSend(BaseModel):
    mailbox_account_id: Optional[str] = Field(None, alias="mailboxAccountId")
    to: Optional[str] = None
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None

    class Config:
        populate_by_name = True

class SentMessageRecord(BaseModel):
    id: Optional[str] = None
    mailbox_account_id: str
    user_id: str
    direction: Direction = Direction.OUTGOING
    to_addresses: str
    from_address: str
    subject: str
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    sent_at: datetime
    received_at: datetime
    is_read: bool = True

    class Config:
        from_attributes = True
