from __future__ import annotations

from types import SimpleNamespace

from reconciler.src.events import EventDispatcher, reconciliation_key
from reconciler.src.workqueue import RateLimitingQueue


def test_reconciliation_key_joins_namespace_and_name() -> None:
    assert (
        reconciliation_key("openshift-machine-api", "machine-api-operator")
        == "openshift-machine-api/machine-api-operator"
    )


def test_every_callback_enqueues_the_same_key_once() -> None:
    queue = RateLimitingQueue("events")
    dispatcher = EventDispatcher(queue, "ns/operator")
    first = SimpleNamespace(metadata=SimpleNamespace(name="a"))
    second = SimpleNamespace(metadata=SimpleNamespace(name="b"))

    dispatcher.on_add(first)
    dispatcher.on_update(first, second)
    dispatcher.on_delete(second)

    assert len(queue) == 1
    assert queue.get(timeout=1) == ("ns/operator", False)
    queue.shut_down()


def test_payload_is_ignored() -> None:
    queue = RateLimitingQueue("events-payload")
    dispatcher = EventDispatcher(queue, "ns/operator")

    dispatcher.on_add(None)

    assert queue.get(timeout=1) == ("ns/operator", False)
    queue.shut_down()
