from fastapi import APIRouter, Depends, HTTPException

from app.core.entitlements import LimitExceededError, can_perform_action, ensure_can_go_live
from app.core.features import get_limit
from app.core.permissions import RestaurantContext, require_any_access
from app.domain.schemas import EventCreate, EventResponse, EventUpdate
from app.repositories.event import EventRepository
from app.services.audit import log_action

router = APIRouter()


def _get_event_or_404(ctx: RestaurantContext, event_id: str) -> dict:
    event = EventRepository.get_by_id(event_id)
    if not event or event["restaurant_id"] != ctx.restaurant_id:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


@router.get("/{restaurant_id}/events", response_model=list[EventResponse])
def list_events(ctx: RestaurantContext = Depends(require_any_access)):
    return [EventResponse(**e) for e in EventRepository.get_all(ctx.restaurant_id)]


@router.post("/{restaurant_id}/events", response_model=EventResponse)
def create_event(
    data: EventCreate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Create an event. Past events never count toward the active limit.

    Requesting ``status=active`` over the tier cap saves a draft instead and
    flags the response with ``downgraded_to_draft``.
    """
    fields = data.model_dump(mode="json", exclude={"status"})
    event = EventRepository.create(ctx.restaurant_id, **fields)
    if not event:
        raise HTTPException(status_code=500, detail="Failed to create event")

    if data.status != "active":
        return EventResponse(**event)

    limit = get_limit(ctx.tier.value, "events")
    allowed = can_perform_action(ctx.restaurant, "events")["allowed"]
    if allowed and EventRepository.activate(event["id"], ctx.restaurant_id, limit):
        log_action(ctx, "event_go_live", {"event_id": event["id"], "title": data.title})
        return EventResponse(**_get_event_or_404(ctx, event["id"]))

    return EventResponse(**event, downgraded_to_draft=True)


@router.put("/{restaurant_id}/events/{event_id}", response_model=EventResponse)
def update_event(
    event_id: str,
    data: EventUpdate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    event = _get_event_or_404(ctx, event_id)
    if event.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Only draft events can be edited")

    update_data = data.model_dump(mode="json", exclude_unset=True)
    if not update_data:
        return EventResponse(**event)

    updated = EventRepository.update(event_id, **update_data)
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to update event")
    return EventResponse(**updated)


@router.post("/{restaurant_id}/events/{event_id}/go-live", response_model=EventResponse)
def go_live(event_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    event = _get_event_or_404(ctx, event_id)
    if event.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Event is not a draft")

    ensure_can_go_live(ctx.restaurant, "events")

    limit = get_limit(ctx.tier.value, "events")
    if not EventRepository.activate(event_id, ctx.restaurant_id, limit):
        raise LimitExceededError("events", can_perform_action(ctx.restaurant, "events"))

    log_action(ctx, "event_go_live", {"event_id": event_id, "title": event.get("title")})
    return EventResponse(**_get_event_or_404(ctx, event_id))


@router.delete("/{restaurant_id}/events/{event_id}")
def delete_event(event_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    """Soft-delete a draft event."""
    event = _get_event_or_404(ctx, event_id)
    if event.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Only draft events can be deleted")

    if not EventRepository.soft_delete(event_id):
        raise HTTPException(status_code=500, detail="Failed to delete event")

    log_action(ctx, "event_deleted", {"event_id": event_id, "title": event.get("title")})
    return {"message": "Event deleted"}
