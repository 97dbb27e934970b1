"""Bot catalog router."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from botforge.api.dependencies import get_orchestrator, get_user_id
from botforge.api.schemas import LiveConfigRead
from botforge.orchestrator import Orchestrator

router = APIRouter(prefix="/bots", tags=["bots"])


@router.get("")
async def list_bots(
    user_id: str | None = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """List active catalog entries.

    Anonymous callers get the public view without repository and config schema.
    """
    catalog = orchestrator.catalog
    entries = catalog.list_entries()
    if user_id is None:
        return [catalog.public_view(entry) for entry in entries]
    return [entry.model_dump() for entry in entries]


@router.get("/{bot_id}")
async def get_bot(
    bot_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get one catalog entry."""
    entry = orchestrator.catalog.get_entry(bot_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Bot not found")
    return entry.model_dump()


@router.get("/{bot_id}/live-config", response_model=LiveConfigRead)
async def get_live_config(
    bot_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> LiveConfigRead:
    """Config schema from the bot repository's app.json, if one can be read."""
    if orchestrator.catalog.get_entry(bot_id) is None:
        raise HTTPException(status_code=404, detail="Bot not found")
    env = await orchestrator.catalog.fetch_live_config_schema(bot_id)
    if env is None:
        return LiveConfigRead(found=False)
    return LiveConfigRead(found=True, env=env)
