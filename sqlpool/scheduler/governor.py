"""
Resource Governor

Admits requests against their workload group's reservation, queues the
rest and releases queued requests in importance order as grants free up.
"""

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..core import Importance, Request
from ..errors import AdmissionTimeout, ConfigurationError
from .groups import FULL_RESOURCE, WorkloadGroup, to_percent

logger = logging.getLogger(__name__)


class AdmissionDecision(Enum):
    RUN_IMMEDIATELY = "RunImmediately"
    QUEUED = "Queued"


@dataclass
class Grant:
    """Resource slice held by an admitted request"""
    request_id: str
    group_name: str
    basis_points: int

    @property
    def percent(self) -> float:
        return to_percent(self.basis_points)


@dataclass
class _Waiter:
    request: Request
    group_key: str
    importance: Importance
    sequence: int
    grant: Optional[Grant] = None
    future: Optional[asyncio.Future] = None
    loop: Optional[asyncio.AbstractEventLoop] = None

    def sort_key(self):
        return (-int(self.importance), self.request.submit_time, self.sequence)


@dataclass
class GroupUsage:
    """Point-in-time usage of one group"""
    granted: int = 0
    running: int = 0
    queued: int = 0
    peak_running: int = 0


class ResourceGovernor:
    """
    Single owner of the per-group grant counters

    A request of group g with grant s is admitted when

        granted[g] + s <= cap[g]
        s <= 100% - sum(granted) - sum over h != g of max(0, min[h] - granted[h])

    i.e. it fits under its own group's cap and does not eat into the part
    of another group's minimum that group is not using yet. Every counter
    mutation happens under one lock and never spans an await.
    """

    def __init__(self, groups: Iterable[WorkloadGroup] = ()):
        """
        Initialize governor

        Args:
            groups: Initial groups (normally the system resource classes)
        """
        self._lock = threading.Lock()
        self._groups: Dict[str, WorkloadGroup] = {}
        self._usage: Dict[str, GroupUsage] = {}
        self._grants: Dict[str, Grant] = {}
        self._queue: List[_Waiter] = []
        self._sequence = itertools.count()
        for group in groups:
            self.create_group(group)

    # ------------------------------------------------------------------
    # Group definitions
    # ------------------------------------------------------------------

    def create_group(self, group: WorkloadGroup):
        """
        Register a workload group

        Raises:
            ConfigurationError: Invalid definition, duplicate name, or the sum
                of all minimum reservations would exceed 100%
        """
        group.validate()
        with self._lock:
            if group.key in self._groups:
                raise ConfigurationError(f"Workload group '{group.name}' already exists")
            reserved = sum(g.min_resource for g in self._groups.values())
            if reserved + group.min_resource > FULL_RESOURCE:
                raise ConfigurationError(
                    f"Cannot create workload group '{group.name}': total "
                    f"MIN_PERCENTAGE_RESOURCE would be {to_percent(reserved + group.min_resource)}% "
                    f"(limit 100%)"
                )
            self._groups[group.key] = group
            self._usage[group.key] = GroupUsage()
        logger.info("Created workload group %s (min %.2f%%, cap %.2f%%, grant %.2f%%)",
                    group.name, to_percent(group.min_resource), to_percent(group.cap_resource),
                    to_percent(group.request_min_grant))

    def drop_group(self, name: str):
        """
        Remove a workload group

        Raises:
            ConfigurationError: Unknown, built-in, or with running or queued requests
        """
        key = name.lower()
        with self._lock:
            group = self._groups.get(key)
            if group is None:
                raise ConfigurationError(f"Workload group '{name}' does not exist")
            if group.is_system:
                raise ConfigurationError(f"Cannot drop system workload group '{group.name}'")
            usage = self._usage[key]
            if usage.running or any(w.group_key == key for w in self._queue):
                raise ConfigurationError(
                    f"Cannot drop workload group '{group.name}' while it has active requests")
            del self._groups[key]
            del self._usage[key]
            self._drain()
        logger.info("Dropped workload group %s", group.name)

    def get_group(self, name: str) -> Optional[WorkloadGroup]:
        return self._groups.get(name.lower())

    def has_group(self, name: str) -> bool:
        return name.lower() in self._groups

    def groups(self) -> List[WorkloadGroup]:
        return list(self._groups.values())

    def effective_cap(self, name: str) -> int:
        """min(cap, 100% - other groups' minimums) in basis points"""
        group = self._groups[name.lower()]
        others = sum(g.min_resource for k, g in self._groups.items() if k != group.key)
        return min(group.cap_resource, FULL_RESOURCE - others)

    def max_concurrency(self, name: str) -> int:
        """Requests of the group that can run at once at the minimum grant"""
        group = self._groups[name.lower()]
        return self.effective_cap(name) // group.request_min_grant

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _headroom(self, key: str) -> int:
        """Largest grant group `key` could receive right now"""
        group = self._groups[key]
        usage = self._usage[key]
        total_granted = sum(u.granted for u in self._usage.values())
        unused_reservations = sum(
            max(0, g.min_resource - self._usage[k].granted)
            for k, g in self._groups.items() if k != key
        )
        return min(group.cap_resource - usage.granted,
                   FULL_RESOURCE - total_granted - unused_reservations)

    def _try_grant(self, request: Request, key: str) -> Optional[Grant]:
        group = self._groups[key]
        headroom = self._headroom(key)
        if group.request_min_grant > headroom:
            return None
        size = min(group.request_max_grant, headroom)
        grant = Grant(request.request_id, group.name, size)
        usage = self._usage[key]
        usage.granted += size
        usage.running += 1
        usage.peak_running = max(usage.peak_running, usage.running)
        self._grants[request.request_id] = grant
        request.resource_allocation_percentage = grant.percent
        return grant

    def try_admit(self, request: Request, group_name: str,
                  importance: Importance) -> AdmissionDecision:
        """
        Admit a request now or place it in the queue

        Args:
            request: Request being admitted
            group_name: Workload group chosen by the classifier
            importance: Importance chosen by the classifier

        Returns:
            RUN_IMMEDIATELY (a grant is held) or QUEUED

        Raises:
            ConfigurationError: Unknown group
        """
        key = group_name.lower()
        with self._lock:
            if key not in self._groups:
                raise ConfigurationError(f"Workload group '{group_name}' does not exist")
            # Queued requests of the same group go first
            blocked = any(w.group_key == key for w in self._queue)
            if not blocked and self._try_grant(request, key) is not None:
                return AdmissionDecision.RUN_IMMEDIATELY
            waiter = _Waiter(request, key, importance, next(self._sequence))
            self._queue.append(waiter)
            self._queue.sort(key=_Waiter.sort_key)
            self._usage[key].queued += 1
            logger.debug("Queued %s in group %s (importance %s)",
                         request.request_id, group_name, importance.label)
            return AdmissionDecision.QUEUED

    async def acquire(self, request: Request, group_name: str, importance: Importance,
                      timeout: Optional[float] = None) -> Grant:
        """
        Wait for a grant

        Args:
            timeout: Seconds to wait in the queue (None waits forever)

        Returns:
            The grant

        Raises:
            AdmissionTimeout: Still queued after `timeout` seconds
        """
        if self.try_admit(request, group_name, importance) is AdmissionDecision.RUN_IMMEDIATELY:
            return self._grants[request.request_id]

        loop = asyncio.get_running_loop()
        with self._lock:
            waiter = self._find_waiter(request.request_id)
            if waiter is None or waiter.grant is not None:
                return self._grants[request.request_id]
            waiter.future = loop.create_future()
            waiter.loop = loop

        started = loop.time()
        try:
            return await asyncio.wait_for(asyncio.shield(waiter.future), timeout)
        except asyncio.TimeoutError:
            with self._lock:
                if waiter.grant is not None:
                    return waiter.grant
                self._remove_waiter(waiter)
            raise AdmissionTimeout(request.request_id, group_name, loop.time() - started) from None
        except asyncio.CancelledError:
            with self._lock:
                granted = waiter.grant is not None
                if not granted:
                    self._remove_waiter(waiter)
            if granted:
                self.release(request.request_id)
            raise

    def _find_waiter(self, request_id: str) -> Optional[_Waiter]:
        for waiter in self._queue:
            if waiter.request.request_id == request_id:
                return waiter
        return None

    def _remove_waiter(self, waiter: _Waiter):
        if waiter in self._queue:
            self._queue.remove(waiter)
            self._usage[waiter.group_key].queued -= 1

    def withdraw(self, request_id: str) -> bool:
        """Remove a queued request (no-op when not queued)"""
        with self._lock:
            waiter = self._find_waiter(request_id)
            if waiter is None:
                return False
            self._remove_waiter(waiter)
            if waiter.future is not None and waiter.loop is not None:
                waiter.loop.call_soon_threadsafe(_cancel_future, waiter.future)
            return True

    def release(self, request_id: str) -> Optional[Grant]:
        """
        Return a request's grant and admit queued requests that now fit

        Returns:
            The released grant, or None if the request held none
        """
        with self._lock:
            grant = self._grants.pop(request_id, None)
            if grant is None:
                return None
            key = grant.group_name.lower()
            usage = self._usage.get(key)
            if usage is not None:
                usage.granted -= grant.basis_points
                usage.running -= 1
            self._drain()
        return grant

    def _drain(self):
        """
        Admit queued requests in importance / submit order

        A waiter that does not fit blocks the rest of its own group only,
        so order is kept within a group while other groups' reservations
        stay usable.
        """
        blocked = set()
        for waiter in list(self._queue):
            if waiter.group_key in blocked:
                continue
            if waiter.group_key not in self._groups:
                continue
            grant = self._try_grant(waiter.request, waiter.group_key)
            if grant is None:
                blocked.add(waiter.group_key)
                continue
            self._remove_waiter(waiter)
            waiter.grant = grant
            logger.debug("Admitted queued request %s (%s)", waiter.request.request_id,
                         waiter.group_key)
            if waiter.future is not None and waiter.loop is not None:
                waiter.loop.call_soon_threadsafe(_resolve_future, waiter.future, grant)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def grant_for(self, request_id: str) -> Optional[Grant]:
        return self._grants.get(request_id)

    def is_queued(self, request_id: str) -> bool:
        with self._lock:
            return self._find_waiter(request_id) is not None

    def queued_requests(self) -> List[str]:
        with self._lock:
            return [w.request.request_id for w in self._queue]

    def usage(self, name: str) -> GroupUsage:
        usage = self._usage[name.lower()]
        return GroupUsage(usage.granted, usage.running, usage.queued, usage.peak_running)

    def total_granted(self) -> int:
        with self._lock:
            return sum(u.granted for u in self._usage.values())

    def group_stats(self) -> List[Dict]:
        """Per-group definition, effective values and live usage"""
        with self._lock:
            stats = []
            for key, group in self._groups.items():
                usage = self._usage[key]
                others = sum(g.min_resource for k, g in self._groups.items() if k != key)
                effective_cap = min(group.cap_resource, FULL_RESOURCE - others)
                stats.append({
                    **group.to_dict(),
                    'effective_min_percentage_resource': to_percent(group.min_resource),
                    'effective_cap_percentage_resource': to_percent(effective_cap),
                    'effective_request_min_resource_grant_percent': to_percent(group.request_min_grant),
                    'max_concurrency': effective_cap // group.request_min_grant,
                    'granted_percentage_resource': to_percent(usage.granted),
                    'running_requests': usage.running,
                    'queued_requests': usage.queued,
                })
            return stats


def _resolve_future(future: asyncio.Future, grant: Grant):
    if not future.done():
        future.set_result(grant)


def _cancel_future(future: asyncio.Future):
    if not future.done():
        future.cancel()
