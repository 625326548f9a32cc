"""
Data Movement Service

Moves rows between distributions so a join or aggregation can run
locally on every distribution. Each source distribution does its part
in a worker thread; a move completes only when every source has
finished (the barrier the consuming step waits on).
"""

import asyncio
import logging
from typing import List, Sequence

import numpy as np

from ..distribution import hash_distributions, bucket_rows

logger = logging.getLogger(__name__)


class DataMovementService:
    """
    Shuffle, broadcast and gather moves over per-distribution row lists

    Every method takes `per_source`, one row list per source distribution.
    """

    def __init__(self, distributions: int):
        """
        Initialize data movement service

        Args:
            distributions: Total number of distributions
        """
        self.distributions = distributions

    def _hash_source(self, rows: Sequence[tuple], key_index: int) -> List[List[tuple]]:
        ids = hash_distributions((row[key_index] for row in rows), self.distributions)
        return bucket_rows(rows, ids, self.distributions)

    async def shuffle(self, per_source: Sequence[Sequence[tuple]],
                      key_index: int) -> List[List[tuple]]:
        """
        Redistribute rows by a recomputed hash of one column

        Args:
            per_source: Rows currently held by each distribution
            key_index: Column the new distribution is computed from

        Returns:
            One row list per target distribution
        """
        outboxes = await asyncio.gather(*(
            asyncio.to_thread(self._hash_source, rows, key_index)
            for rows in per_source if rows
        ))

        targets: List[List[tuple]] = [[] for _ in range(self.distributions)]
        for outbox in outboxes:
            for dist, bucket in enumerate(outbox):
                if bucket:
                    targets[dist].extend(bucket)

        if outboxes:
            sizes = np.fromiter((len(t) for t in targets), dtype=np.int64, count=self.distributions)
            logger.debug("Shuffled %d rows (max %d, mean %.1f per distribution)",
                         int(sizes.sum()), int(sizes.max()), float(sizes.mean()))
        return targets

    async def broadcast(self, per_source: Sequence[Sequence[tuple]]) -> List[tuple]:
        """
        Copy every source row to all distributions

        Returns:
            The full row list every distribution reads
        """
        return await self.gather(per_source)

    async def gather(self, per_source: Sequence[Sequence[tuple]]) -> List[tuple]:
        """Collect all rows in one place (control node or broadcast target)"""
        chunks = await asyncio.gather(*(asyncio.to_thread(list, rows) for rows in per_source if rows))
        rows: List[tuple] = []
        for chunk in chunks:
            rows.extend(chunk)
        return rows
