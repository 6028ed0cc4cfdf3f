"""
In-memory implementation of the shared store.

MemoryDatabase holds the state shared by every user; MemoryStore is one user's
authenticated view of it. Change notifications are delivered asynchronously,
after the write that caused them has returned, so callers see the same
eventual-consistency behavior as with a remote store.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from . import paths
from .base import (
    ConcurrentModification,
    PermissionDenied,
    Store,
    Subscription,
    WatchCallback,
    WriteBatch,
    invoke_callback,
)
from .rules import AccessRules

logger = logging.getLogger(__name__)


class _Watcher:
    def __init__(self, uid: str, prefix: str, callback: WatchCallback):
        self.uid = uid
        self.prefix = prefix
        self.callback = callback
        self.subscription: Optional[Subscription] = None
        self.tasks: Set[asyncio.Task] = set()


class MemoryDatabase:
    """
    Shared state plus rule enforcement and change notification.
    """

    def __init__(self, rules: Optional[AccessRules] = None):
        self._data: Dict[str, Any] = {}
        self._watchers: List[_Watcher] = []
        self._pending: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self.rules = rules or AccessRules()
        self.commits: List[Tuple[str, WriteBatch]] = []

    def connect(self, user_id: str) -> "MemoryStore":
        """Authenticated view of the database for one user"""
        return MemoryStore(self, user_id)

    # Raw reader, used by the rules and by tests

    async def get(self, path: str) -> Any:
        return copy.deepcopy(self._data.get(path))

    async def read(self, prefix: str) -> Dict[str, Any]:
        return {
            paths.relative(path, prefix): copy.deepcopy(value)
            for path, value in self._data.items()
            if paths.is_under(path, prefix)
        }

    def exists(self, path: str) -> bool:
        return any(paths.is_under(p, path) for p in self._data)

    async def commit(self, user_id: str, batch: WriteBatch) -> None:
        async with self._lock:
            for pre in batch.preconditions:
                if self.exists(pre.path) != pre.exists:
                    raise ConcurrentModification(pre.path, pre.exists)
            await self.rules.check_commit(user_id, batch, self)

            for path in batch.deletes:
                for existing in [p for p in self._data if paths.is_under(p, path)]:
                    del self._data[existing]
            for path, value in batch.sets.items():
                self._data[path] = copy.deepcopy(value)

            self.commits.append((user_id, batch))

        self._notify(paths.with_dependents(list(batch.updates)))

    def watch(self, user_id: str, prefix: str, callback: WatchCallback) -> Subscription:
        paths.split(prefix)
        watcher = _Watcher(user_id, prefix, callback)
        watcher.subscription = Subscription(prefix, on_cancel=lambda: self._remove(watcher))
        self._watchers.append(watcher)
        self._schedule(watcher)
        return watcher.subscription

    async def settle(self) -> None:
        """Wait until every pending notification (and its follow-ups) ran"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _remove(self, watcher: _Watcher) -> None:
        if watcher in self._watchers:
            self._watchers.remove(watcher)
        current = asyncio.current_task() if _loop_running() else None
        for task in list(watcher.tasks):
            if task is not current:
                task.cancel()

    def _notify(self, changed: List[str]) -> None:
        for watcher in list(self._watchers):
            if any(paths.overlaps(watcher.prefix, path) for path in changed):
                self._schedule(watcher)

    def _schedule(self, watcher: _Watcher) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(watcher))
        self._pending.add(task)
        watcher.tasks.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(watcher.tasks.discard)

    async def _deliver(self, watcher: _Watcher) -> None:
        await asyncio.sleep(0)
        if not watcher.subscription.active:
            return

        try:
            await self.rules.check_read(watcher.uid, watcher.prefix, self)
            snapshot = await self.read(watcher.prefix)
        except PermissionDenied:
            snapshot = None

        try:
            await invoke_callback(watcher.callback, snapshot)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Watch callback for %s failed", watcher.prefix)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
        return True
    except RuntimeError:
        return False


class MemoryStore(Store):
    """
    One user's view of a MemoryDatabase, with access rules applied.
    """

    def __init__(self, database: MemoryDatabase, user_id: str):
        self.database = database
        self.user_id = user_id

    async def get(self, path: str) -> Any:
        await self.database.rules.check_read(self.user_id, path, self.database)
        return await self.database.get(path)

    async def read(self, prefix: str) -> Dict[str, Any]:
        await self.database.rules.check_read(self.user_id, prefix, self.database)
        return await self.database.read(prefix)

    async def commit(self, batch: WriteBatch) -> None:
        await self.database.commit(self.user_id, batch)

    def watch(self, prefix: str, callback: WatchCallback) -> Subscription:
        return self.database.watch(self.user_id, prefix, callback)
