from __future__ import annotations

from typing import Any, Protocol

from reconciler.src.workqueue import RateLimitingQueue


class ResourceEventHandler(Protocol):
    """Callbacks an informer invokes for objects in its watched collection."""

    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


def reconciliation_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` key identifying the operator instance."""
    return f"{namespace}/{name}"


class EventDispatcher:
    """Maps every change notification to the singleton reconciliation key.

    The operator reconciles its whole desired state on each sync, so the
    changed object itself is irrelevant; repeated notifications collapse in
    the queue into a single pending key.
    """

    def __init__(self, queue: RateLimitingQueue, key: str) -> None:
        self.queue = queue
        self.key = key

    def on_add(self, obj: Any) -> None:
        self.queue.add(self.key)

    def on_update(self, old: Any, new: Any) -> None:
        self.queue.add(self.key)

    def on_delete(self, obj: Any) -> None:
        self.queue.add(self.key)
