from fastapi import APIRouter, Depends

from mailbox_core.api import deps
from mailbox_core.schemas.email import EmailSend
from mailbox_core.schemas.user import CurrentUser
from mailbox_core.services.dispatcher import MailDispatcher

router = APIRouter()

@router.post("/send", status_code=200)
async def send_email_endpoint(
    email_in: EmailSend,
    current_user: CurrentUser = Depends(deps.get_current_user),
    dispatcher: MailDispatcher = Depends(deps.get_dispatcher),
):
    sent = await dispatcher.send(
        user_id=current_user.id,
        account_id=email_in.mailbox_account_id,
        to=email_in.to,
        subject=email_in.subject,
        text=email_in.text,
        html=email_in.html,
    )
    return {"ok": True, "message_id": sent.id}
