from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Publishes outbox envelopes ({org_id, event_type, subject, payload, occurred_at, outbox_id})."""
    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
