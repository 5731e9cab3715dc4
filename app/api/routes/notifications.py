import logging

from fastapi import APIRouter, Depends, HTTPException

from app.core.dates import utcnow
from app.core.entitlements import SEND, LimitExceededError, can_perform_action
from app.core.features import get_limit
from app.core.permissions import RestaurantContext, require_any_access
from app.domain.schemas import NotificationCreate, NotificationResponse
from app.repositories.notification import NotificationRepository
from app.repositories.restaurant import RestaurantRepository
from app.services.audit import log_action
from app.services.monthly_reset import check_monthly_reset

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{restaurant_id}/notifications", response_model=list[NotificationResponse])
def list_notifications(ctx: RestaurantContext = Depends(require_any_access)):
    return [NotificationResponse(**n) for n in NotificationRepository.get_all(ctx.restaurant_id)]


def _claim_monthly_send(ctx: RestaurantContext) -> int:
    """Take one of this month's sends, or raise LimitExceededError.

    The counter is incremented atomically and only while still under the
    tier's limit. Returns the new count.
    """
    check_monthly_reset(ctx.restaurant)

    result = can_perform_action(ctx.restaurant, "notifications", SEND)
    if not result["allowed"]:
        raise LimitExceededError("notifications", result)

    limit = get_limit(ctx.tier.value, "notifications")
    sent_count = RestaurantRepository.record_notification_sent(ctx.restaurant_id, limit)
    if sent_count is None:
        ctx.refresh()
        raise LimitExceededError("notifications", can_perform_action(ctx.restaurant, "notifications", SEND))
    return sent_count


def _release_monthly_send(ctx: RestaurantContext) -> None:
    logger.warning(f"Releasing notification send for restaurant {ctx.restaurant_id}")
    RestaurantRepository.release_notification_sent(ctx.restaurant_id)


@router.post("/{restaurant_id}/notifications", response_model=NotificationResponse)
def create_notification(
    data: NotificationCreate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Send a notification now, or schedule it.

    Sending now counts toward the monthly cap. Scheduled notifications are
    not counted until they are sent.
    """
    if data.scheduled_for is not None:
        notification = NotificationRepository.create(
            restaurant_id=ctx.restaurant_id,
            title=data.title,
            message=data.message,
            notification_type=data.notification_type,
            scheduled_for=data.scheduled_for.isoformat(),
        )
        if not notification:
            raise HTTPException(status_code=500, detail="Failed to schedule notification")
        return NotificationResponse(**notification)

    sent_count = _claim_monthly_send(ctx)
    try:
        notification = NotificationRepository.create(
            restaurant_id=ctx.restaurant_id,
            title=data.title,
            message=data.message,
            notification_type=data.notification_type,
            sent_at=utcnow().isoformat(),
        )
    except Exception:
        _release_monthly_send(ctx)
        raise
    if not notification:
        _release_monthly_send(ctx)
        raise HTTPException(status_code=500, detail="Failed to record notification")

    logger.info(f"Notification {notification['id']} sent for restaurant {ctx.restaurant_id} ({sent_count} this month)")
    log_action(ctx, "notification_sent", {"notification_id": notification["id"], "title": data.title})
    return NotificationResponse(**notification)


def _get_scheduled(ctx: RestaurantContext, notification_id: str) -> dict:
    notification = NotificationRepository.get_by_id(notification_id)
    if not notification or notification["restaurant_id"] != ctx.restaurant_id:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification.get("sent_at"):
        raise HTTPException(status_code=409, detail="Notification was already sent")
    return notification


@router.post("/{restaurant_id}/notifications/{notification_id}/send", response_model=NotificationResponse)
def send_scheduled_notification(
    notification_id: str,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Send a scheduled notification right away. Counts toward the monthly cap."""
    notification = _get_scheduled(ctx, notification_id)

    sent_count = _claim_monthly_send(ctx)
    try:
        sent = NotificationRepository.mark_sent(notification_id, utcnow().isoformat())
    except Exception:
        _release_monthly_send(ctx)
        raise
    if not sent:
        _release_monthly_send(ctx)
        raise HTTPException(status_code=409, detail="Notification was already sent")

    logger.info(f"Scheduled notification {notification_id} sent for restaurant {ctx.restaurant_id} ({sent_count} this month)")
    log_action(ctx, "notification_sent", {
        "notification_id": notification_id,
        "title": notification.get("title"),
        "scheduled_for": notification.get("scheduled_for"),
    })
    return NotificationResponse(**sent)


@router.delete("/{restaurant_id}/notifications/{notification_id}")
def cancel_scheduled_notification(
    notification_id: str,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Cancel a notification that has not been sent yet."""
    notification = _get_scheduled(ctx, notification_id)

    if not NotificationRepository.delete_scheduled(notification_id):
        raise HTTPException(status_code=409, detail="Notification was already sent")

    log_action(ctx, "notification_cancelled", {"notification_id": notification_id, "title": notification.get("title")})
    return {"message": "Scheduled notification cancelled"}
