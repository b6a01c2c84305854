"""Audit sink for state-changing ordering operations.

Audit storage is owned by a separate service; this core only emits one
structured record per event on the ``audit`` logger, where the deployment's
log shipper picks it up. Emitting is fire-and-forget: a failure here is
logged and never propagates into the operation being audited.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("audit")


def log_action(
    action: str,
    entity_type: str = "",
    entity_id: Any = "",
    actor_type: str = "system",
    actor_id: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Emit an audit record.

    Args:
        action: What happened (cart_converted, order_status_changed, points_earned, ...)
        entity_type: Type of entity affected (cart, order, customer)
        entity_id: ID of the affected entity
        actor_type: customer, staff, driver or system
        actor_id: ID of the actor, when known
        details: Additional context (old/new status, amounts, ...)
    """
    try:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else "",
            "actor_type": actor_type,
            "actor_id": actor_id,
            "details": details or {},
        }
        logger.info(json.dumps(record, default=str))
    except Exception:
        logger.exception("Failed to emit audit record")
