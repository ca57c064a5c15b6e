"""Fan-out of pipeline progress updates to registered subscribers.

Subscribers register a callback per document id under a handle (usually a
UI session id), optionally tagged with the requesting user. Callbacks run
outside the registry lock, one at a time, and each one is isolated: an
exception is logged and delivery continues. A callback that raises
``ChannelClosedError`` (or a ``ConnectionError``) is treated as a dead
channel and dropped from the registry.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, Union, runtime_checkable

from paperflow_events.models import PipelineProgressUpdate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PipelineProgressUpdate], None]


class ChannelClosedError(Exception):
    """Raised by a subscriber whose delivery channel is gone."""


@runtime_checkable
class ProgressObserver(Protocol):
    """Presentation-layer observer of one document's progress."""

    def on_update(self, update: PipelineProgressUpdate) -> None: ...


Subscriber = Union[ProgressCallback, ProgressObserver]


class ProgressBroadcaster:
    """Thread-safe registry of progress subscribers.

    Usage:
        broadcaster = ProgressBroadcaster()
        broadcaster.subscribe(paper_id, session_id, callback, user_id=user_id)
        broadcaster.broadcast(paper_id, update)
        broadcaster.unsubscribe(paper_id, session_id)
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, dict[str, ProgressCallback]] = {}
        self._user_sessions: dict[str, set[str]] = {}
        self._handle_owner: dict[str, str] = {}
        self._lock = threading.RLock()

    def subscribe(
        self,
        document_id: str,
        handle: str,
        subscriber: Subscriber,
        user_id: str | None = None,
    ) -> None:
        """Register ``subscriber`` for ``document_id`` under ``handle``.

        Re-subscribing an existing handle replaces its callback.
        """
        callback = subscriber if callable(subscriber) else subscriber.on_update
        with self._lock:
            self._subscribers.setdefault(document_id, {})[handle] = callback
            if user_id is not None:
                previous = self._handle_owner.get(handle)
                if previous is not None and previous != user_id:
                    self._drop_session(previous, handle)
                self._user_sessions.setdefault(user_id, set()).add(handle)
                self._handle_owner[handle] = user_id
        logger.debug("Subscribed %s to progress of %s", handle, document_id)

    def unsubscribe(self, document_id: str, handle: str) -> bool:
        """Remove ``handle`` from ``document_id``. Returns True if it was present."""
        with self._lock:
            removed = self._remove(document_id, handle)
        if removed:
            logger.debug("Unsubscribed %s from progress of %s", handle, document_id)
        return removed

    def unsubscribe_all(self, handle: str) -> int:
        """Remove ``handle`` from every document, e.g. when a session closes."""
        with self._lock:
            documents = [
                doc for doc, handles in self._subscribers.items() if handle in handles
            ]
            for document_id in documents:
                self._remove(document_id, handle)
        return len(documents)

    def _remove(self, document_id: str, handle: str) -> bool:
        # Caller holds the lock
        handles = self._subscribers.get(document_id)
        if handles is None or handle not in handles:
            return False
        del handles[handle]
        if not handles:
            del self._subscribers[document_id]
        if not any(handle in h for h in self._subscribers.values()):
            user_id = self._handle_owner.pop(handle, None)
            if user_id is not None:
                self._drop_session(user_id, handle)
        return True

    def _drop_session(self, user_id: str, handle: str) -> None:
        # Caller holds the lock
        sessions = self._user_sessions.get(user_id)
        if sessions is not None:
            sessions.discard(handle)
            if not sessions:
                del self._user_sessions[user_id]

    def broadcast(self, document_id: str, update: PipelineProgressUpdate) -> int:
        """Deliver ``update`` to every subscriber of ``document_id``.

        Returns:
            Number of subscribers that received the update.
        """
        with self._lock:
            targets = list(self._subscribers.get(document_id, {}).items())
        return self._deliver(document_id, targets, update)

    def broadcast_to_user(
        self,
        user_id: str,
        document_id: str,
        update: PipelineProgressUpdate,
    ) -> int:
        """Deliver ``update`` only to ``user_id``'s handles subscribed to the document."""
        with self._lock:
            user_handles = self._user_sessions.get(user_id, set())
            targets = [
                (handle, callback)
                for handle, callback in self._subscribers.get(document_id, {}).items()
                if handle in user_handles
            ]
        return self._deliver(document_id, targets, update)

    def _deliver(
        self,
        document_id: str,
        targets: list[tuple[str, ProgressCallback]],
        update: PipelineProgressUpdate,
    ) -> int:
        delivered = 0
        for handle, callback in targets:
            with self._lock:
                # Skip handles unsubscribed since the snapshot was taken
                current = self._subscribers.get(document_id, {}).get(handle)
            if current is not callback:
                continue
            try:
                callback(update)
                delivered += 1
            except (ChannelClosedError, ConnectionError):
                logger.info(
                    "Dropping subscriber %s of %s: channel closed",
                    handle,
                    document_id,
                )
                self.unsubscribe(document_id, handle)
            except Exception:
                logger.exception(
                    "Progress callback %s failed for document %s",
                    handle,
                    document_id,
                )
        return delivered

    def subscriber_count(self, document_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(document_id, {}))

    def has_subscribers(self, document_id: str) -> bool:
        return self.subscriber_count(document_id) > 0

    def document_ids(self) -> list[str]:
        """Return ids of documents with at least one subscriber."""
        with self._lock:
            return list(self._subscribers)

    def user_handles(self, user_id: str) -> set[str]:
        with self._lock:
            return set(self._user_sessions.get(user_id, set()))
