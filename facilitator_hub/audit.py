"""
Audit trail for facilitator activity
Append-only and fire-and-forget: a failing sink is logged, never raised to the caller
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
import structlog

from facilitator_hub.models import utcnow
from facilitator_hub.storage.kv import KeyValueStore

logger = structlog.get_logger()

AUDIT_KEY_PREFIX = "audit:"
AUDIT_INDEX_KEY = "audit:events"


class AuditEventType(str, Enum):
    TRANSACTION = "transaction"
    FACILITATOR_ADDED = "facilitator_added"
    FACILITATOR_ACTIVATED = "facilitator_activated"
    FACILITATOR_DELETED = "facilitator_deleted"


class AuditEvent(BaseModel):
    """One line of the audit trail"""
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_type: AuditEventType
    facilitator_id: str
    facilitator_name: Optional[str] = None
    chain_id: Optional[int] = None
    chain_name: Optional[str] = None
    tx_hash: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    amount: Optional[str] = None
    gas_spent: Optional[str] = None
    status: str = "success"
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


AuditSink = Callable[[AuditEvent], Awaitable[None]]


class StoreAuditSink:
    """Persists events into the key-value store under audit:<event_id>"""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def __call__(self, event: AuditEvent) -> None:
        await self.store.set(f"{AUDIT_KEY_PREFIX}{event.event_id}", event.model_dump_json())
        await self.store.sadd(AUDIT_INDEX_KEY, event.event_id)

    async def list_events(self) -> List[AuditEvent]:
        ids = await self.store.smembers(AUDIT_INDEX_KEY)
        values = await self.store.mget([f"{AUDIT_KEY_PREFIX}{i}" for i in ids])
        events = []
        for value in values:
            if value is None:
                continue
            data = json.loads(value) if isinstance(value, str) else value
            events.append(AuditEvent.model_validate(data))
        return sorted(events, key=lambda e: e.timestamp)


class AuditLog:
    """Fans an event out to every sink; always logs it via structlog first"""

    def __init__(self, sinks: Iterable[AuditSink] = ()):
        self.sinks: List[AuditSink] = list(sinks)

    async def append(self, event: AuditEvent) -> None:
        logger.info(
            "audit_event",
            event_type=event.event_type.value,
            facilitator_id=event.facilitator_id,
            tx_hash=event.tx_hash,
            chain_id=event.chain_id,
            status=event.status,
        )
        for sink in self.sinks:
            try:
                await sink(event)
            except Exception as e:
                logger.error(
                    "audit_sink_failed",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    error=str(e),
                )
