"""
The shared store seam.

The store is untrusted, shared and eventually consistent. It offers single-path
reads, prefix reads, multi-path batch commits with simple preconditions, and
change notifications per prefix. It offers no transactions across separate
commits.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from . import paths

logger = logging.getLogger(__name__)

Snapshot = Optional[Dict[str, Any]]
WatchCallback = Callable[[Snapshot], Union[Awaitable[None], None]]


class StoreError(Exception):
    """Base exception for store failures"""
    user_message = "The chat service could not complete the request."


class PermissionDenied(StoreError):
    """The store's access rules refused a read or write"""

    def __init__(self, reason: str, path: Optional[str] = None):
        self.reason = reason
        self.path = path
        super().__init__(f"{reason}: {path}" if path else reason)


class ConcurrentModification(StoreError):
    """A batch precondition no longer held when the batch was applied"""

    def __init__(self, path: str, expected_exists: bool):
        self.path = path
        self.expected_exists = expected_exists
        state = "exist" if expected_exists else "be absent"
        super().__init__(f"Expected {path} to {state}")


@dataclass(frozen=True)
class Precondition:
    """Existence check evaluated atomically with a batch"""
    path: str
    exists: bool


class WriteBatch:
    """
    A multi-path write applied as one unit.

    Deletes remove the path and everything below it. Within one batch all
    deletes are applied before any set.
    """

    def __init__(self):
        self.updates: Dict[str, Any] = {}
        self.preconditions: List[Precondition] = []

    def set(self, path: str, value: Any) -> "WriteBatch":
        paths.split(path)
        if value is None:
            raise ValueError("Use delete() to remove a path")
        self.updates[path] = value
        return self

    def delete(self, path: str) -> "WriteBatch":
        paths.split(path)
        self.updates[path] = None
        return self

    def require_exists(self, path: str) -> "WriteBatch":
        paths.split(path)
        self.preconditions.append(Precondition(path, True))
        return self

    def require_absent(self, path: str) -> "WriteBatch":
        paths.split(path)
        self.preconditions.append(Precondition(path, False))
        return self

    @property
    def sets(self) -> Dict[str, Any]:
        return {p: v for p, v in self.updates.items() if v is not None}

    @property
    def deletes(self) -> List[str]:
        return sorted((p for p, v in self.updates.items() if v is None), key=lambda p: p.count("/"))

    def __len__(self) -> int:
        return len(self.updates)

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            "updates": dict(self.updates),
            "preconditions": [{"path": p.path, "exists": p.exists} for p in self.preconditions],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "WriteBatch":
        """Create from dictionary"""
        batch = cls()
        for path, value in (data.get("updates") or {}).items():
            if value is None:
                batch.delete(path)
            else:
                batch.set(path, value)
        for item in data.get("preconditions") or []:
            if item.get("exists"):
                batch.require_exists(item["path"])
            else:
                batch.require_absent(item["path"])
        return batch


class Subscription:
    """
    Handle for a change-notification registration.

    Owned by whoever called watch(); notifications stop after unsubscribe().
    """

    def __init__(self, prefix: str, on_cancel: Optional[Callable[[], None]] = None):
        self.prefix = prefix
        self.active = True
        self._on_cancel = on_cancel
        self._children: List["Subscription"] = []

    @classmethod
    def combine(cls, prefix: str, *subscriptions: "Subscription") -> "Subscription":
        """A single handle that cancels several subscriptions together"""
        group = cls(prefix)
        group._children.extend(subscriptions)
        return group

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        for child in self._children:
            child.unsubscribe()
        if self._on_cancel:
            self._on_cancel()


async def invoke_callback(callback: WatchCallback, snapshot: Snapshot) -> None:
    """Run a watch callback, awaiting it if it is a coroutine function"""
    result = callback(snapshot)
    if inspect.isawaitable(result):
        await result


class Store(ABC):
    """
    A user's authenticated view of the shared store.
    """

    user_id: str

    @abstractmethod
    async def get(self, path: str) -> Any:
        """
        Read a single leaf.

        Returns:
            The stored value, or None if absent

        Raises:
            PermissionDenied: If the rules forbid the read
        """

    @abstractmethod
    async def read(self, prefix: str) -> Dict[str, Any]:
        """
        Read every leaf under prefix.

        Returns:
            Mapping of path relative to prefix -> value

        Raises:
            PermissionDenied: If the rules forbid the read
        """

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """
        Apply a batch as one unit.

        Raises:
            ConcurrentModification: If a precondition does not hold
            PermissionDenied: If the rules forbid any part of the batch
        """

    @abstractmethod
    def watch(self, prefix: str, callback: WatchCallback) -> Subscription:
        """
        Deliver a snapshot of prefix now and after every change below it.

        The callback receives None when the rules no longer allow reading
        the prefix (for example after leaving a conversation).
        """

    async def close(self) -> None:
        """Release connections held by the store"""
