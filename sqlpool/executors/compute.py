"""
Compute executor: runs plan steps against one distribution
"""

from typing import Dict, Any

from ..core import LocationType
from .base import BaseExecutor


class ComputeExecutor(BaseExecutor):
    """
    Executor bound to one distribution

    Distribution d is hosted by compute node d mod compute_nodes.
    """

    location_type = LocationType.COMPUTE

    def __init__(self, distribution_id: int, compute_nodes: int = 1, threads: int = 1):
        super().__init__(f"distribution-{distribution_id}", threads)
        self.distribution_id = distribution_id
        self.node_id = distribution_id % max(1, compute_nodes)

    def get_capacity(self) -> Dict[str, Any]:
        return {
            'distribution_id': self.distribution_id,
            'pdw_node_id': self.node_id + 1,
            'threads': self.threads,
        }
