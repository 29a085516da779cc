"""Tracking Domain Service.

AccessTracker instruments one mutable dict or list. Callers work with
a proxy (TrackedDict / TrackedList) that behaves like the original
object; every read and write made through it is reported to the
tracker as a dot-path.

Proxies hold the raw object, the tracker and their own path. The raw
object never learns about its tracker, so tracking leaves no trace
on it once the proxy is dropped.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import MutableMapping, MutableSequence
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from structsync.domains.shape.value_objects import is_plain_object
from structsync.domains.shared.kernel import (
    ROOT_PATH,
    TrackerDisposedError,
    join_path,
)

from .value_objects import AccessPattern, Mutation

logger = logging.getLogger(__name__)


class AccessTracker:
    """Records read and written paths for one object over one session.

    Hooks:
        on_read(path): called for every read through the proxy
        on_write(path, old, new): called for every write

    Only the net effect per written path is retained: the first old
    value seen and the most recent new value.
    """

    def __init__(self, target: Any, token: Optional[str] = None) -> None:
        if not (is_plain_object(target) or isinstance(target, list)):
            raise TypeError(
                f"Only dicts with string keys and lists can be tracked, got {type(target).__name__}"
            )
        self.token = token or uuid.uuid4().hex
        self._accessed: Set[str] = set()
        self._mutated: Dict[str, Mutation] = {}
        self._disposed = False
        self._proxy: Any = _wrap(target, self, ROOT_PATH)

    @property
    def proxy(self) -> Any:
        """Root proxy for the tracked object."""
        return self._proxy

    @property
    def active(self) -> bool:
        return not self._disposed

    def on_read(self, path: str) -> None:
        if self._disposed:
            raise TrackerDisposedError(self.token)
        if path != ROOT_PATH:
            self._accessed.add(path)

    def on_write(self, path: str, old_value: Any, new_value: Any, deleted: bool = False) -> None:
        if self._disposed:
            raise TrackerDisposedError(self.token)
        previous = self._mutated.get(path)
        first_old = previous.old_value if previous is not None else old_value
        self._mutated[path] = Mutation(old_value=first_old, new_value=new_value, deleted=deleted)

    def get_access_pattern(self) -> AccessPattern:
        """Snapshot of everything recorded so far.

        Raises:
            TrackerDisposedError: If the tracker has been disposed
        """
        if self._disposed:
            raise TrackerDisposedError(self.token)
        return AccessPattern(
            accessed=frozenset(self._accessed),
            mutated=dict(self._mutated),
            timestamp=int(time.time() * 1000),
        )

    def dispose(self) -> None:
        """Stop observing. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self._accessed.clear()
        self._mutated.clear()
        self._proxy = None
        logger.debug("Access tracker %s disposed", self.token)


# ============================================================
# Proxies
# ============================================================


class _TrackedBase:
    __slots__ = ("_target", "_tracker", "_path")

    def __init__(self, target: Any, tracker: AccessTracker, path: str) -> None:
        self._target = target
        self._tracker = tracker
        self._path = path

    def _read(self, path: str) -> None:
        if self._tracker.active:
            self._tracker.on_read(path)

    def _write(self, path: str, old: Any, new: Any, deleted: bool = False) -> None:
        if self._tracker.active:
            self._tracker.on_write(path, old, new, deleted)

    def __eq__(self, other: object) -> bool:
        return self._target == unwrap(other)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._target!r})"

    __hash__ = None  # type: ignore[assignment]


class TrackedDict(_TrackedBase, MutableMapping):
    """Dict proxy that reports key reads and writes."""

    __slots__ = ()

    def __getitem__(self, key: str) -> Any:
        value = self._target[key]
        path = join_path(self._path, key)
        self._read(path)
        return _wrap(value, self._tracker, path)

    def __setitem__(self, key: str, value: Any) -> None:
        raw = unwrap(value)
        self._write(join_path(self._path, key), self._target.get(key), raw)
        self._target[key] = raw

    def __delitem__(self, key: str) -> None:
        old = self._target[key]
        del self._target[key]
        self._write(join_path(self._path, key), old, None, deleted=True)

    def __iter__(self) -> Iterator[str]:
        return iter(self._target)

    def __len__(self) -> int:
        return len(self._target)

    def __contains__(self, key: object) -> bool:
        return key in self._target


class TrackedList(_TrackedBase, MutableSequence):
    """List proxy that reports index reads and writes.

    Inserts, deletions and sorts move every later item, so they are
    recorded as a write of the whole list rather than of one index.
    """

    __slots__ = ()

    def _index(self, index: int) -> int:
        size = len(self._target)
        normalized = index + size if index < 0 else index
        if not 0 <= normalized < size:
            raise IndexError("list index out of range")
        return normalized

    def __getitem__(self, index):
        if isinstance(index, slice):
            items = []
            for position in range(*index.indices(len(self._target))):
                path = join_path(self._path, position)
                self._read(path)
                items.append(_wrap(self._target[position], self._tracker, path))
            return items
        position = self._index(index)
        path = join_path(self._path, position)
        self._read(path)
        return _wrap(self._target[position], self._tracker, path)

    def __setitem__(self, index, value) -> None:
        if isinstance(index, slice):
            old = list(self._target)
            self._target[index] = [unwrap(v) for v in value]
            self._write(self._path, old, list(self._target))
            return
        position = self._index(index)
        raw = unwrap(value)
        self._write(join_path(self._path, position), self._target[position], raw)
        self._target[position] = raw

    def __delitem__(self, index) -> None:
        old = list(self._target)
        if isinstance(index, slice):
            del self._target[index]
        else:
            del self._target[self._index(index)]
        self._write(self._path, old, list(self._target))

    def __len__(self) -> int:
        return len(self._target)

    def insert(self, index: int, value: Any) -> None:
        old = list(self._target)
        self._target.insert(index, unwrap(value))
        self._write(self._path, old, list(self._target))

    def sort(self, *, key: Optional[Callable[[Any], Any]] = None, reverse: bool = False) -> None:
        old = list(self._target)
        self._target.sort(key=key, reverse=reverse)
        self._write(self._path, old, list(self._target))

    def copy(self) -> List[Any]:
        return self[:]


def _wrap(value: Any, tracker: AccessTracker, path: str) -> Any:
    if is_plain_object(value):
        return TrackedDict(value, tracker, path)
    if isinstance(value, list):
        return TrackedList(value, tracker, path)
    return value


def unwrap(value: Any) -> Any:
    """Return the raw object behind a proxy (or the value itself)."""
    if isinstance(value, _TrackedBase):
        return value._target
    return value


def tracker_of(value: Any) -> Optional[AccessTracker]:
    """Return the tracker observing a proxy, if any."""
    if isinstance(value, _TrackedBase):
        return value._tracker
    return None


def is_tracked(value: Any) -> bool:
    return isinstance(value, _TrackedBase)


def tracked_path(value: Any) -> Optional[str]:
    """Dot-path of a proxy within its tracked root (ROOT_PATH for the root)."""
    if isinstance(value, _TrackedBase):
        return value._path
    return None
