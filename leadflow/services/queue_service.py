"""Per-contact sequential processing.

Items for one contact run one at a time in arrival order; different contacts
drain concurrently. A contact's bookkeeping exists only while it has work.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from leadflow.logging_config import contact_logger, get_logger

logger = get_logger("queue_service")

Handler = Callable[[Any], Awaitable[Any]]


@dataclass
class _QueueItem:
    item: Any
    handler: Handler
    future: asyncio.Future


@dataclass
class _ContactSlot:
    items: deque = field(default_factory=deque)
    draining: bool = False
    task: Optional[asyncio.Task] = None


def _item_label(item: Any) -> Optional[str]:
    return getattr(item, "provider_message_id", None) or getattr(item, "label", None)


class ContactQueue:
    def __init__(self) -> None:
        self._slots: dict[str, _ContactSlot] = {}
        self.processed = 0
        self.failed = 0

    @property
    def active_contacts(self) -> int:
        return len(self._slots)

    def depth(self, contact: str) -> int:
        slot = self._slots.get(contact)
        return len(slot.items) if slot else 0

    def total_depth(self) -> int:
        return sum(len(slot.items) for slot in self._slots.values())

    def enqueue(self, contact: str, item: Any, handler: Handler) -> asyncio.Future:
        """Schedule ``handler(item)`` after every earlier item for ``contact``.

        Returns a future resolved with the handler's result, or with None when
        the handler raised (the failure is logged, never propagated).
        Must be called from within the running event loop.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        slot = self._slots.get(contact)
        if slot is None:
            slot = _ContactSlot()
            self._slots[contact] = slot

        slot.items.append(_QueueItem(item=item, handler=handler, future=future))
        if not slot.draining:
            slot.draining = True
            slot.task = loop.create_task(self._drain(contact, slot))
        return future

    async def _drain(self, contact: str, slot: _ContactSlot) -> None:
        log = contact_logger("queue_service", contact)
        try:
            while slot.items:
                queued = slot.items.popleft()
                try:
                    result = await queued.handler(queued.item)
                except Exception as exc:
                    self.failed += 1
                    log.error(
                        "Queue handler failed",
                        exc_info=True,
                        context={"message_id": _item_label(queued.item), "error": str(exc)},
                    )
                    result = None
                else:
                    self.processed += 1
                if not queued.future.done():
                    queued.future.set_result(result)
        finally:
            slot.draining = False
            if self._slots.get(contact) is slot and not slot.items:
                del self._slots[contact]

    async def join(self) -> None:
        """Wait until every contact's queue is drained (including work added meanwhile)."""
        while self._slots:
            tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
            if not tasks:
                await asyncio.sleep(0)
                continue
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        for slot in list(self._slots.values()):
            if slot.task is not None:
                slot.task.cancel()
        tasks = [slot.task for slot in self._slots.values() if slot.task is not None]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._slots.clear()
