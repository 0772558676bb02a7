from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from reconciler.src.events import ResourceEventHandler
from reconciler.src.metrics import METRICS

WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


def _metadata_field(obj: Any, attr: str, key: str) -> Any:
    """Read a metadata field from a typed model (``attr``) or a dict (``key``)."""
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get(key)
    return getattr(getattr(obj, "metadata", None), attr, None)


def object_key(obj: Any) -> str | None:
    name = _metadata_field(obj, "name", "name")
    if not name:
        return None
    namespace = _metadata_field(obj, "namespace", "namespace")
    return f"{namespace}/{name}" if namespace else name


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _list_resource_version(listing: Any) -> str | None:
    return _metadata_field(listing, "resource_version", "resourceVersion")


class ResourceInformer:
    """List-then-watch bridge delivering change notifications for one collection.

    1. Lists the collection, fills the local store and calls ``on_add`` for
       every object, then reports :meth:`has_synced`.
    2. Watches from the list's ``resourceVersion`` and maps ADDED, MODIFIED
       and DELETED events onto the handler callbacks.
    3. On ``410 Gone`` re-lists and delivers ``on_update`` for surviving
       objects and ``on_delete`` for vanished ones.
    4. On other errors backs off exponentially with jitter (capped at 30 s).
       ``401`` / ``403`` are configuration errors and stop the informer.

    Works with typed list functions and with ``CustomObjectsApi`` list calls,
    which return plain dicts.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        wait_for_sync: bool = True,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.resource = resource
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.wait_for_sync = wait_for_sync
        self.logger = logger or logging.getLogger(__name__)

        self._handlers: list[ResourceEventHandler] = []
        self._store: dict[str, Any] = {}
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event_type: str, obj: Any) -> None:
        key = object_key(obj)
        if key is None:
            return
        METRICS.watch_events_total.labels(resource=self.resource, type=event_type).inc()

        if event_type == "DELETED":
            self._store.pop(key, None)
            for handler in self._handlers:
                handler.on_delete(obj)
            return

        old = self._store.get(key)
        self._store[key] = obj
        for handler in self._handlers:
            if old is None:
                handler.on_add(obj)
            else:
                handler.on_update(old, obj)

    def _replace(self, listing: Any) -> None:
        """Reconcile the store against a fresh listing and notify handlers."""
        seen: set[str] = set()
        for obj in _list_items(listing):
            key = object_key(obj)
            if key is None:
                continue
            seen.add(key)
            self._dispatch("MODIFIED" if key in self._store else "ADDED", obj)
        for key in [k for k in self._store if k not in seen]:
            self._dispatch("DELETED", self._store[key])

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        self._replace(listing)
        return _list_resource_version(listing)

    def _back_off(self, stop_event: threading.Event, backoff_seconds: int) -> int:
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def _is_access_denied(self, exc: ApiException) -> bool:
        if exc.status in {401, 403}:
            self.logger.error(
                "Kubernetes API access denied for %s (status=%s). "
                "Check operator RBAC and service account permissions.",
                self.resource,
                exc.status,
            )
            return True
        return False

    def run(self, stop_event: threading.Event) -> None:
        """List then watch until *stop_event* fires or access is denied."""
        self._external_stop.clear()

        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._list()
                self._synced.set()
                self.logger.info(
                    "Synced %s cache, watching from resourceVersion %s",
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._is_access_denied(exc):
                    return
                self.logger.warning("Initial list of %s failed: %s", self.resource, exc.reason)
            except Exception:
                self.logger.exception("Unexpected error listing %s", self.resource)
            backoff_seconds = self._back_off(stop_event, backoff_seconds)

        backoff_seconds = 1
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            expired = False
            try:
                kwargs = dict(self.list_kwargs, timeout_seconds=WATCH_TIMEOUT_SECONDS)
                if resource_version:
                    kwargs["resource_version"] = resource_version
                for event in watcher.stream(self.list_fn, **kwargs):
                    if self._should_stop(stop_event):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    event_resource_version = _metadata_field(
                        obj, "resource_version", "resourceVersion"
                    )
                    if event_resource_version:
                        resource_version = event_resource_version
                    event_type = str(event.get("type", ""))
                    if event_type in {"ADDED", "MODIFIED", "DELETED"}:
                        self._dispatch(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away, start over.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.resource)
                    expired = True
                elif self._is_access_denied(exc):
                    return
                else:
                    self.logger.warning("Watch of %s failed: %s", self.resource, exc.reason)
                    backoff_seconds = self._back_off(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected error watching %s", self.resource)
                backoff_seconds = self._back_off(stop_event, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if not expired:
                continue
            try:
                resource_version = self._list()
            except ApiException as exc:
                if self._is_access_denied(exc):
                    return
                self.logger.warning("Re-list of %s failed: %s", self.resource, exc.reason)
                resource_version = None
                backoff_seconds = self._back_off(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected error re-listing %s", self.resource)
                resource_version = None
                backoff_seconds = self._back_off(stop_event, backoff_seconds)
