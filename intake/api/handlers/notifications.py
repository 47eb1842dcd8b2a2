from __future__ import annotations

from intake.api.handlers.deps import ApiDeps
from intake.api.schemas import NotificationActionResponse, NotificationListResponse, NotificationResponse

COMPONENT_ID = "api.list_notifications"


async def list_notifications_handler(*, limit: int, api_deps: ApiDeps) -> NotificationListResponse:
    recent = await api_deps.notifications.list_recent(limit=limit)
    unread = await api_deps.notifications.unread_count()
    return NotificationListResponse(
        items=[NotificationResponse.from_snapshot(notification) for notification in recent],
        unread_count=unread,
    )


async def mark_notification_read_handler(
    *,
    notification_id: str,
    api_deps: ApiDeps,
) -> NotificationActionResponse | None:
    if not await api_deps.notifications.mark_read(notification_id=notification_id):
        return None
    return await _action_response("Notification marked as read", 1, api_deps)


async def mark_all_notifications_read_handler(*, api_deps: ApiDeps) -> NotificationActionResponse:
    updated = await api_deps.notifications.mark_all_read()
    return await _action_response(f"Marked {updated} notifications as read", updated, api_deps)


async def delete_notification_handler(
    *,
    notification_id: str,
    api_deps: ApiDeps,
) -> NotificationActionResponse | None:
    if not await api_deps.notifications.delete(notification_id=notification_id):
        return None
    return await _action_response("Notification deleted", 1, api_deps)


async def clear_read_notifications_handler(*, api_deps: ApiDeps) -> NotificationActionResponse:
    deleted = await api_deps.notifications.clear_read()
    return await _action_response(f"Cleared {deleted} read notifications", deleted, api_deps)


async def _action_response(message: str, affected: int, api_deps: ApiDeps) -> NotificationActionResponse:
    return NotificationActionResponse(
        message=message,
        affected=affected,
        unread_count=await api_deps.notifications.unread_count(),
    )
