"""Broadcast of "a harvest was opened" to everyone watching the channel.

Each receiver builds its own session pointed at the same target; nothing
else is shared between them.
"""
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import MalformedInput

logger = logging.getLogger(__name__)

OPEN_HARVEST = "openHarvest"

Handler = Callable[[Dict], Awaitable[None]]


def open_harvest_event(target_ref: Optional[str], scene_id=None, opened_by=None) -> Dict:
    return {
        "action": OPEN_HARVEST,
        "targetRef": target_ref,
        "sceneId": scene_id,
        "openedBy": opened_by,
    }


def parse_event(raw) -> Dict:
    """Decodes a broadcast payload; raises MalformedInput when it isn't one."""
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedInput(f"undecodable broadcast payload: {e}") from e
    if not isinstance(raw, dict) or not raw.get("action"):
        raise MalformedInput(f"broadcast payload has no action: {raw!r}")
    target_ref = raw.get("targetRef")
    if target_ref is not None and not isinstance(target_ref, (str, int)):
        raise MalformedInput(f"bad targetRef in broadcast payload: {target_ref!r}")
    return raw


class BroadcastChannel:
    """In-process fan-out of JSON events to registered handlers."""

    def __init__(self):
        self._handlers: List[Handler] = []

    def on_receive(self, handler: Handler) -> None:
        self._handlers.append(handler)

    async def emit(self, event: Dict) -> None:
        await self.deliver(json.dumps(event))

    async def deliver(self, raw) -> None:
        try:
            event = parse_event(raw)
        except MalformedInput as e:
            logger.warning("Dropping broadcast: %s", e)
            return
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception:
                logger.exception("Broadcast handler failed for %s", event.get("action"))
