from fastapi import APIRouter, Depends, HTTPException, status

from jobchat.api.errors import store_http_error
from jobchat.core.auth import Principal
from jobchat.core.security import get_current_principal
from jobchat.schemas.notifications import MarkReadOut, NotificationsOut
from jobchat.services.errors import StoreError
from jobchat.services.inbox import Inbox, get_inbox

router = APIRouter()


@router.get("", response_model=NotificationsOut)
async def list_notifications(
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> NotificationsOut:
    try:
        aggregator = await inbox.open_notifications(principal.user_id, live=False)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    try:
        return NotificationsOut(
            notifications=list(aggregator.notifications),
            unread_count=aggregator.unread_count,
        )
    finally:
        await aggregator.close()


@router.post("/read-all", response_model=MarkReadOut)
async def mark_all_notifications_read(
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> MarkReadOut:
    try:
        aggregator = await inbox.open_notifications(principal.user_id, live=False)
        try:
            updated = await aggregator.mark_all_as_read()
        finally:
            await aggregator.close()
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return MarkReadOut(updated=updated, unread_count=aggregator.unread_count)


@router.post("/{notification_id}/read", response_model=MarkReadOut)
async def mark_notification_read(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> MarkReadOut:
    try:
        aggregator = await inbox.open_notifications(principal.user_id, live=False)
        try:
            updated = await aggregator.mark_as_read(notification_id)
            # Zero rows updated also covers a notification that was already read.
            if not updated and await aggregator.find(notification_id) is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="notification not found")
        finally:
            await aggregator.close()
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return MarkReadOut(updated=updated, unread_count=aggregator.unread_count)
