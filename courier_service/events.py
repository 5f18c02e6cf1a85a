# events.py
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from courier_service.ws_manager import ConnectionManager

logger = logging.getLogger("courier-service.events")


def build_event(event_type: str, data: Dict[str, Any], trace_id: Optional[str] = None) -> Dict[str, Any]:
    """Envelope for everything pushed to a driver's sockets."""
    return {
        "type": event_type,
        "data": data,
        "event_id": data.get("event_id") or str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "courier-service",
        "trace_id": trace_id,
    }


async def publish_event(
    manager: ConnectionManager,
    driver_id: str,
    event_type: str,
    data: Dict[str, Any],
    trace_id: Optional[str] = None,
) -> int:
    """Log the event and push it to every socket the driver has open."""
    body = build_event(event_type, data, trace_id)
    logger.info(f"[EVENT] {event_type} → driver {driver_id}: {json.dumps(data, default=str)[:300]}")
    return await manager.send_to_driver(driver_id, body)
