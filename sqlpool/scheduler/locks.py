"""
Object lock manager

Shared / exclusive locks on tables, granted to waiters in importance
order then submit order.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..core import Importance

logger = logging.getLogger(__name__)


class LockMode(Enum):
    SHARED = "S"
    EXCLUSIVE = "X"

    def compatible_with(self, other: "LockMode") -> bool:
        return self is LockMode.SHARED and other is LockMode.SHARED


@dataclass
class _LockWaiter:
    owner: str
    mode: LockMode
    importance: Importance
    submit_time: datetime
    sequence: int
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop

    def sort_key(self):
        return (-int(self.importance), self.submit_time, self.sequence)


@dataclass
class _ObjectLock:
    holders: Dict[str, LockMode] = field(default_factory=dict)
    waiters: List[_LockWaiter] = field(default_factory=list)

    def compatible(self, owner: str, mode: LockMode) -> bool:
        return all(held.compatible_with(mode) or holder == owner
                   for holder, held in self.holders.items())


class LockManager:
    """
    Table lock table

    Requests lock every object they touch before running; objects are
    always locked in sorted name order so two requests can never wait on
    each other. When a lock is released, waiters are granted in
    importance DESC / submit_time ASC order, stopping at the first one
    that is still incompatible.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._objects: Dict[str, _ObjectLock] = {}
        self._sequence = itertools.count()

    def _try_lock(self, name: str, owner: str, mode: LockMode) -> bool:
        entry = self._objects.setdefault(name, _ObjectLock())
        if entry.waiters or not entry.compatible(owner, mode):
            return False
        current = entry.holders.get(owner)
        if current is not LockMode.EXCLUSIVE:
            entry.holders[owner] = mode
        return True

    async def acquire(self, owner: str, requests: List[Tuple[str, LockMode]],
                      importance: Importance = Importance.NORMAL,
                      submit_time: Optional[datetime] = None,
                      on_wait=None):
        """
        Lock a set of objects

        Args:
            owner: Request id
            requests: (object name, mode) pairs; the strongest mode per
                object wins
            importance: Waiter priority
            submit_time: Request submit time (waiter order)
            on_wait: Callback invoked once before the first wait
        """
        wanted: Dict[str, LockMode] = {}
        for name, mode in requests:
            key = name.lower()
            if wanted.get(key) is not LockMode.EXCLUSIVE:
                wanted[key] = mode

        submit_time = submit_time or datetime.now()
        loop = asyncio.get_running_loop()
        waited = False
        try:
            for name in sorted(wanted):
                mode = wanted[name]
                with self._lock:
                    if self._try_lock(name, owner, mode):
                        continue
                    waiter = _LockWaiter(owner, mode, importance, submit_time,
                                         next(self._sequence), loop.create_future(), loop)
                    entry = self._objects[name]
                    entry.waiters.append(waiter)
                    entry.waiters.sort(key=_LockWaiter.sort_key)
                if not waited and on_wait is not None:
                    on_wait()
                waited = True
                logger.debug("%s waiting for %s lock on %s", owner, mode.value, name)
                try:
                    await waiter.future
                except asyncio.CancelledError:
                    with self._lock:
                        entry = self._objects.get(name)
                        if entry is not None and waiter in entry.waiters:
                            entry.waiters.remove(waiter)
                            self._grant_waiters(name)
                    raise
        except BaseException:
            self.release(owner)
            raise

    def release(self, owner: str):
        """Release every lock held by owner and wake compatible waiters"""
        with self._lock:
            for name in list(self._objects):
                entry = self._objects[name]
                if owner in entry.holders:
                    del entry.holders[owner]
                    self._grant_waiters(name)
                if not entry.holders and not entry.waiters:
                    del self._objects[name]

    def _grant_waiters(self, name: str):
        entry = self._objects[name]
        while entry.waiters:
            waiter = entry.waiters[0]
            if waiter.future.done():
                entry.waiters.pop(0)
                continue
            if not entry.compatible(waiter.owner, waiter.mode):
                break
            entry.waiters.pop(0)
            current = entry.holders.get(waiter.owner)
            if current is not LockMode.EXCLUSIVE:
                entry.holders[waiter.owner] = waiter.mode
            waiter.loop.call_soon_threadsafe(_grant, waiter.future)

    def holders(self, name: str) -> Dict[str, LockMode]:
        with self._lock:
            entry = self._objects.get(name.lower())
            return dict(entry.holders) if entry else {}

    def waiting(self, name: str) -> List[str]:
        with self._lock:
            entry = self._objects.get(name.lower())
            return [w.owner for w in entry.waiters] if entry else []


def _grant(future: asyncio.Future):
    if not future.done():
        future.set_result(True)
