"""Bridge status and recent events routes."""

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder

from bridgewatch.events import EventsFeed
from bridgewatch.fallback import FallbackChain
from bridgewatch.models import BridgeStatusResponse, NoEvents

router = APIRouter(prefix="/api", tags=["bridge"])


def get_fallback_chain(request: Request) -> FallbackChain:
    return request.app.state.fallback_chain


def get_events_feed(request: Request) -> EventsFeed:
    return request.app.state.events_feed


@router.get("/bridge-status", response_model=BridgeStatusResponse, response_model_exclude_none=True)
async def get_bridge_status(chain: FallbackChain = Depends(get_fallback_chain)):
    return await chain.get_status()


@router.get("/events")
async def get_events(feed: EventsFeed = Depends(get_events_feed)):
    """Most recent closures and delays as a list, or ``{"message": ...}`` when there are none."""
    result = await feed.recent_events()
    if isinstance(result, NoEvents):
        return {"message": result.message}
    return jsonable_encoder(result.events)
