# bhejo-tracking/bhejo/realtime.py
"""
Keyed realtime store backends.

A realtime store holds JSON-like values under hierarchical string paths such
as ``orderLocations/<order_id>`` and pushes every change to subscribers.
Two backends are provided:

- InMemoryRealtimeStore: process-local tree, callbacks fire synchronously on write
- FirebaseRestStore: Firebase Realtime Database over its REST API, with
  server-sent events for subscriptions

Both expose ``get``/``set``/``update`` coroutines and ``on_value``, which
returns an unsubscribe callable. Backend failures raise StoreError.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from . import config

logger = logging.getLogger(__name__)

Snapshot = Optional[Any]
ValueCallback = Callable[[Snapshot], None]
Unsubscribe = Callable[[], None]


class StoreError(Exception):
    """A read or write against the realtime store failed."""


def split_path(path: str) -> List[str]:
    """'orderLocations/abc/' -> ['orderLocations', 'abc']"""
    return [part for part in path.strip("/").split("/") if part]


def read_at(tree: Any, parts: List[str]) -> Snapshot:
    node = tree
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def write_at(tree: Dict[str, Any], parts: List[str], value: Any) -> Dict[str, Any]:
    """
    Replace the value at ``parts`` inside ``tree`` and return the new root.

    Writing None removes the key; parents left empty are pruned, the way the
    Firebase database drops empty nodes.
    """
    if not parts:
        return value if isinstance(value, dict) else ({} if value is None else value)

    node = tree
    trail: List[Tuple[Dict[str, Any], str]] = []
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        trail.append((node, part))
        node = child

    if value is None:
        node.pop(parts[-1], None)
        for parent, key in reversed(trail):
            if parent[key]:
                break
            del parent[key]
    else:
        node[parts[-1]] = value
    return tree


def _related(a: List[str], b: List[str]) -> bool:
    """True if one path is an ancestor of (or equal to) the other."""
    shorter = min(len(a), len(b))
    return a[:shorter] == b[:shorter]


class RealtimeStore:
    """Interface shared by the realtime store backends."""

    async def get(self, path: str) -> Snapshot:
        raise NotImplementedError

    async def set(self, path: str, value: Any) -> None:
        raise NotImplementedError

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        raise NotImplementedError

    def on_value(self, path: str, callback: ValueCallback) -> Unsubscribe:
        raise NotImplementedError


class InMemoryRealtimeStore(RealtimeStore):
    """
    Process-local realtime store.

    Every write notifies the subscribers of the written path, its ancestors and
    its descendants with a deep copy of their current value (None if absent).
    A new subscriber receives the current value immediately. Callbacks run on
    the writer's thread after the write lock is released.
    """

    def __init__(self) -> None:
        self._tree: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._listeners: Dict[int, Tuple[List[str], ValueCallback]] = {}
        self._next_listener_id = 0

    async def get(self, path: str) -> Snapshot:
        with self._lock:
            return copy.deepcopy(read_at(self._tree, split_path(path)))

    async def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        with self._lock:
            self._tree = write_at(self._tree, parts, copy.deepcopy(value))
        self._notify(parts)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        """Merge ``values`` into the node at ``path``; keys may be relative sub-paths."""
        parts = split_path(path)
        with self._lock:
            for key, value in values.items():
                self._tree = write_at(self._tree, parts + split_path(key), copy.deepcopy(value))
        self._notify(parts)

    def on_value(self, path: str, callback: ValueCallback) -> Unsubscribe:
        parts = split_path(path)
        with self._lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            self._listeners[listener_id] = (parts, callback)
            current = copy.deepcopy(read_at(self._tree, parts))
        self._dispatch(callback, current)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def _notify(self, written: List[str]) -> None:
        with self._lock:
            pending = [
                (callback, copy.deepcopy(read_at(self._tree, parts)))
                for parts, callback in self._listeners.values()
                if _related(parts, written)
            ]
        for callback, snapshot in pending:
            self._dispatch(callback, snapshot)

    @staticmethod
    def _dispatch(callback: ValueCallback, snapshot: Snapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("Realtime subscriber callback failed")


class FirebaseRestStore(RealtimeStore):
    """
    Firebase Realtime Database accessed through its REST API.

    Reads and writes are blocking ``requests`` calls pushed to a worker thread
    so they do not stall the event loop. Subscriptions hold a streaming
    server-sent-events connection on a daemon thread; callbacks run on that
    thread.

    Args:
        base_url: Database URL, e.g. https://<project>-default-rtdb.firebaseio.com
        auth_token: Optional database secret or ID token, sent as ``auth``
        timeout: Per-request timeout in seconds
        session: Optional requests.Session (injected by tests)
    """

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = config.REMOTE_STORE_TIMEOUT_SECONDS if timeout is None else timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{'/'.join(split_path(path))}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self.auth_token} if self.auth_token else {}

    def _request(self, method: str, path: str, payload: Any = None) -> Snapshot:
        try:
            response = self.session.request(
                method,
                self._url(path),
                params=self._params(),
                data=json.dumps(payload) if payload is not None else None,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise StoreError(f"{method} {path} timed out") from e
        except requests.exceptions.RequestException as e:
            raise StoreError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise StoreError(f"{method} {path} returned invalid JSON: {e}") from e

    async def get(self, path: str) -> Snapshot:
        return await asyncio.to_thread(self._request, "GET", path)

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await asyncio.to_thread(self._request, "DELETE", path)
        else:
            await asyncio.to_thread(self._request, "PUT", path, value)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._request, "PATCH", path, values)

    def on_value(self, path: str, callback: ValueCallback) -> Unsubscribe:
        listener = _EventStreamListener(self, path, callback)
        listener.start()
        return listener.stop


class _EventStreamListener(threading.Thread):
    """Follows a Firebase event stream and keeps a local copy of the subscribed node."""

    def __init__(self, store: FirebaseRestStore, path: str, callback: ValueCallback) -> None:
        super().__init__(name=f"rtdb-listener:{path}", daemon=True)
        self.store = store
        self.path = path
        self.callback = callback
        self._stop_event = threading.Event()
        self._response: Optional[requests.Response] = None
        self._snapshot: Snapshot = None

    def stop(self) -> None:
        self._stop_event.set()
        if self._response is not None:
            self._response.close()

    def run(self) -> None:
        try:
            self._response = self.store.session.get(
                self.store._url(self.path),
                params=self.store._params(),
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.store.timeout, None),
            )
            self._response.raise_for_status()
            event: Optional[str] = None
            for line in self._response.iter_lines(decode_unicode=True):
                if self._stop_event.is_set():
                    break
                if not line:
                    continue
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:"):
                    self.handle_event(event, line[len("data:"):].strip())
        except requests.exceptions.RequestException as e:
            if not self._stop_event.is_set():
                logger.warning(f"Realtime stream for {self.path} closed: {e}")

    def handle_event(self, event: Optional[str], data: str) -> None:
        """Apply one put/patch event to the local snapshot and push it to the callback."""
        if event not in ("put", "patch"):
            if event == "auth_revoked":
                logger.warning(f"Realtime stream for {self.path}: auth revoked")
                self._stop_event.set()
            return
        try:
            message = json.loads(data)
        except ValueError:
            logger.warning(f"Ignoring malformed stream event for {self.path}: {data!r}")
            return

        parts = split_path(message.get("path", "/"))
        if event == "put":
            if parts:
                tree = self._snapshot if isinstance(self._snapshot, dict) else {}
                self._snapshot = write_at(tree, parts, message.get("data")) or None
            else:
                self._snapshot = message.get("data")
        else:
            tree = self._snapshot if isinstance(self._snapshot, dict) else {}
            for key, value in (message.get("data") or {}).items():
                tree = write_at(tree, parts + split_path(key), value)
            self._snapshot = tree or None
        InMemoryRealtimeStore._dispatch(self.callback, copy.deepcopy(self._snapshot))


def create_realtime_store() -> RealtimeStore:
    """Build the realtime store selected in config."""
    if config.USE_REMOTE_STORE:
        logger.info(f"Using Firebase realtime store at {config.REALTIME_DATABASE_URL}")
        return FirebaseRestStore(config.REALTIME_DATABASE_URL)
    return InMemoryRealtimeStore()
