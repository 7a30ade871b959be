from fastapi import APIRouter, Depends

from jobchat.api.errors import store_http_error
from jobchat.core.auth import Principal
from jobchat.core.security import get_current_principal
from jobchat.schemas.messages import RecentMessagesOut
from jobchat.services.errors import StoreError
from jobchat.services.inbox import Inbox, get_inbox

router = APIRouter()


@router.get("/recent", response_model=RecentMessagesOut)
async def recent_messages(
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> RecentMessagesOut:
    try:
        recent = await inbox.open_recent_messages(principal.user_id, live=False)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    try:
        return RecentMessagesOut(messages=list(recent.messages), unread_count=recent.unread_count)
    finally:
        await recent.close()
