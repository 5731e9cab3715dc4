import logging

from app.core.permissions import RestaurantContext
from app.repositories.audit_log import AuditLogRepository

logger = logging.getLogger(__name__)


def log_action(ctx: RestaurantContext, action_type: str, details: dict | None = None) -> None:
    """Record a staff action in the audit log.

    A failed write is logged; it never fails the action being audited.
    """
    try:
        AuditLogRepository.create(
            restaurant_id=ctx.restaurant_id,
            action_type=action_type,
            action_details=details,
            user_id=ctx.user_id,
            user_email=ctx.user_email,
            user_role=ctx.role,
        )
    except Exception as e:
        logger.error(f"Failed to write audit log '{action_type}' for restaurant {ctx.restaurant_id}: {e}")
