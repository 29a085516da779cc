"""Aggregates for the Tracking Context.

RequestContext owns every tracker created while serving one request
and guarantees they are disposed when the request scope ends, on
success, on error and on cancellation alike.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Dict, Iterator, List, Optional

from structsync.domains.shared.kernel import TrackerDisposedError

from .services import AccessTracker, tracker_of, unwrap
from .value_objects import AccessPattern

logger = logging.getLogger(__name__)


class TrackerTable:
    """Side table from tracker token to tracker.

    Keyed by the token assigned when the tracker is created, never by
    the tracked object, so an entry does not outlive the scope that
    registered it. Entries are added on scope entry and released on
    scope exit.
    """

    def __init__(self) -> None:
        self._trackers: Dict[str, AccessTracker] = {}
        self._lock = threading.Lock()

    def register(self, tracker: AccessTracker) -> None:
        with self._lock:
            if tracker.token in self._trackers:
                raise ValueError(f"Tracker token already registered: {tracker.token}")
            self._trackers[tracker.token] = tracker

    def lookup(self, token: str) -> Optional[AccessTracker]:
        with self._lock:
            return self._trackers.get(token)

    def release(self, token: str) -> None:
        """Dispose and forget a tracker. Unknown tokens are ignored."""
        with self._lock:
            tracker = self._trackers.pop(token, None)
        if tracker is not None:
            tracker.dispose()

    def tokens(self) -> List[str]:
        with self._lock:
            return list(self._trackers)

    def __len__(self) -> int:
        return len(self._trackers)

    def __contains__(self, token: object) -> bool:
        return token in self._trackers


class RequestContext:
    """Per-request scope for tracked state.

    Usage::

        with RequestContext() as ctx:
            state = ctx.track({"stats": {"totalUsers": 10}})
            state["stats"]["totalUsers"] = 11
            packet = protocol.encode(state, EncodeContext.from_known(known))
        # every tracker is disposed here, even if encode raised

    A context is never reused: once disposed, track() raises.
    """

    def __init__(
        self,
        request_id: Optional[str] = None,
        table: Optional[TrackerTable] = None,
    ) -> None:
        self.request_id = request_id or (
            f"req-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
        )
        self._table = table if table is not None else TrackerTable()
        self._tokens: List[str] = []
        self._by_object: Dict[int, str] = {}
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def track(self, initial_state: Any) -> Any:
        """Wrap a dict or list in a tracking proxy.

        Tracking the same object twice in one request returns the
        existing proxy, so one object is bound to exactly one tracker.

        Raises:
            TrackerDisposedError: If the context has been disposed
            TypeError: If the value cannot be tracked
        """
        if self._disposed:
            raise TrackerDisposedError(self.request_id)
        raw = unwrap(initial_state)
        existing_token = self._by_object.get(id(raw))
        if existing_token is not None:
            tracker = self._table.lookup(existing_token)
            if tracker is not None and tracker.active:
                return tracker.proxy

        tracker = AccessTracker(raw)
        self._table.register(tracker)
        self._tokens.append(tracker.token)
        self._by_object[id(raw)] = tracker.token
        logger.debug("Request %s tracking object as %s", self.request_id, tracker.token)
        return tracker.proxy

    def tracker_for(self, proxy: Any) -> Optional[AccessTracker]:
        """Return the tracker for a proxy created by this context."""
        tracker = tracker_of(proxy)
        if tracker is None or tracker.token not in self._tokens:
            return None
        return self._table.lookup(tracker.token)

    def pattern_for(self, proxy: Any) -> AccessPattern:
        """Access pattern recorded for one proxy.

        Raises:
            TrackerDisposedError: If the context has been disposed
            KeyError: If the proxy was not created by this context
        """
        if self._disposed:
            raise TrackerDisposedError(self.request_id)
        tracker = self.tracker_for(proxy)
        if tracker is None:
            raise KeyError("Object is not tracked by this request context")
        return tracker.get_access_pattern()

    def patterns(self) -> Dict[str, AccessPattern]:
        """Access patterns of every live tracker, keyed by token."""
        if self._disposed:
            raise TrackerDisposedError(self.request_id)
        result: Dict[str, AccessPattern] = {}
        for token in self._tokens:
            tracker = self._table.lookup(token)
            if tracker is not None and tracker.active:
                result[token] = tracker.get_access_pattern()
        return result

    def dispose(self) -> None:
        """Release every tracker created by this context. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        for token in self._tokens:
            self._table.release(token)
        self._tokens.clear()
        self._by_object.clear()

    def cancel(self) -> None:
        """Abort the request: trackers are released immediately."""
        logger.debug("Request %s cancelled", self.request_id)
        self.dispose()

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._tokens))

    def __enter__(self) -> RequestContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
