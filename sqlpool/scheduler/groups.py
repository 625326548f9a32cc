"""
Workload groups: named resource reservations
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from ..core import Importance
from ..errors import ConfigurationError

# 100 % expressed in hundredths of a percent
FULL_RESOURCE = 10000


def to_basis_points(percent: Any) -> int:
    """
    Percentage -> hundredths of a percent (3.25 -> 325)

    Raises:
        ConfigurationError: Not a number or more than two decimals
    """
    try:
        scaled = Decimal(str(percent)) * 100
    except (InvalidOperation, ValueError):
        raise ConfigurationError(f"'{percent}' is not a valid percentage") from None
    if scaled != scaled.to_integral_value():
        raise ConfigurationError(f"Percentage {percent} allows at most two decimals")
    return int(scaled)


def to_percent(basis_points: int) -> float:
    return basis_points / 100.0


@dataclass
class WorkloadGroup:
    """
    Resource reservation for a class of requests

    Percentages are stored in basis points (hundredths of a percent) so
    admission arithmetic is exact.

    Attributes:
        name: Unique group name (case-insensitive)
        min_resource: Reserved floor (MIN_PERCENTAGE_RESOURCE)
        cap_resource: Ceiling (CAP_PERCENTAGE_RESOURCE)
        request_min_grant: Slice granted per request (REQUEST_MIN_RESOURCE_GRANT_PERCENT)
        request_max_grant: Largest slice a request may grow to when resources are idle
        importance: Default importance of requests classified into the group
        query_execution_timeout_sec: 0 for no timeout
        is_system: Built-in resource class group
    """
    name: str
    min_resource: int = 0
    cap_resource: int = FULL_RESOURCE
    request_min_grant: int = 300
    request_max_grant: Optional[int] = None
    importance: Importance = Importance.NORMAL
    query_execution_timeout_sec: int = 0
    is_system: bool = False
    create_time: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.request_max_grant is None:
            self.request_max_grant = self.request_min_grant

    @property
    def key(self) -> str:
        return self.name.lower()

    def validate(self):
        """
        Check the group's own invariants

        Raises:
            ConfigurationError: Invalid or conflicting percentages
        """
        if not 0 <= self.min_resource <= FULL_RESOURCE:
            raise ConfigurationError(
                f"MIN_PERCENTAGE_RESOURCE of '{self.name}' must be between 0 and 100")
        if not 0 < self.cap_resource <= FULL_RESOURCE:
            raise ConfigurationError(
                f"CAP_PERCENTAGE_RESOURCE of '{self.name}' must be greater than 0 and at most 100")
        if not 0 < self.request_min_grant <= FULL_RESOURCE:
            raise ConfigurationError(
                f"REQUEST_MIN_RESOURCE_GRANT_PERCENT of '{self.name}' must be greater than 0 "
                f"and at most 100")
        if self.min_resource > self.cap_resource:
            raise ConfigurationError(
                f"MIN_PERCENTAGE_RESOURCE of '{self.name}' cannot exceed CAP_PERCENTAGE_RESOURCE")
        if self.request_min_grant > self.cap_resource:
            raise ConfigurationError(
                f"REQUEST_MIN_RESOURCE_GRANT_PERCENT of '{self.name}' cannot exceed "
                f"CAP_PERCENTAGE_RESOURCE")
        if 0 < self.min_resource < self.request_min_grant:
            raise ConfigurationError(
                f"MIN_PERCENTAGE_RESOURCE of '{self.name}' must be 0 or at least "
                f"REQUEST_MIN_RESOURCE_GRANT_PERCENT")
        if self.request_max_grant < self.request_min_grant or self.request_max_grant > self.cap_resource:
            raise ConfigurationError(
                f"REQUEST_MAX_RESOURCE_GRANT_PERCENT of '{self.name}' must be between "
                f"REQUEST_MIN_RESOURCE_GRANT_PERCENT and CAP_PERCENTAGE_RESOURCE")
        if self.query_execution_timeout_sec < 0:
            raise ConfigurationError(
                f"QUERY_EXECUTION_TIMEOUT_SEC of '{self.name}' cannot be negative")

    @classmethod
    def from_options(cls, name: str, options: Dict[str, Any]) -> "WorkloadGroup":
        """
        Build a group from CREATE WORKLOAD GROUP ... WITH (...) options

        Raises:
            ConfigurationError: Missing or unknown option
        """
        known = {'MIN_PERCENTAGE_RESOURCE', 'CAP_PERCENTAGE_RESOURCE',
                 'REQUEST_MIN_RESOURCE_GRANT_PERCENT', 'REQUEST_MAX_RESOURCE_GRANT_PERCENT',
                 'IMPORTANCE', 'QUERY_EXECUTION_TIMEOUT_SEC'}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown workload group option(s): {', '.join(sorted(unknown))}")
        for required in ('MIN_PERCENTAGE_RESOURCE', 'CAP_PERCENTAGE_RESOURCE',
                         'REQUEST_MIN_RESOURCE_GRANT_PERCENT'):
            if required not in options:
                raise ConfigurationError(f"Workload group '{name}' requires {required}")

        min_grant = to_basis_points(options['REQUEST_MIN_RESOURCE_GRANT_PERCENT'])
        max_grant = options.get('REQUEST_MAX_RESOURCE_GRANT_PERCENT')
        try:
            importance = Importance.parse(options.get('IMPORTANCE', 'NORMAL'))
        except ValueError as e:
            raise ConfigurationError(str(e)) from None
        try:
            timeout = int(options.get('QUERY_EXECUTION_TIMEOUT_SEC', 0))
        except (TypeError, ValueError):
            raise ConfigurationError("QUERY_EXECUTION_TIMEOUT_SEC must be an integer") from None

        return cls(
            name=name,
            min_resource=to_basis_points(options['MIN_PERCENTAGE_RESOURCE']),
            cap_resource=to_basis_points(options['CAP_PERCENTAGE_RESOURCE']),
            request_min_grant=min_grant,
            request_max_grant=to_basis_points(max_grant) if max_grant is not None else None,
            importance=importance,
            query_execution_timeout_sec=timeout,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'min_percentage_resource': to_percent(self.min_resource),
            'cap_percentage_resource': to_percent(self.cap_resource),
            'request_min_resource_grant_percent': to_percent(self.request_min_grant),
            'request_max_resource_grant_percent': to_percent(self.request_max_grant),
            'importance': self.importance.label,
            'query_execution_timeout_sec': self.query_execution_timeout_sec,
            'is_system': self.is_system,
            'create_time': self.create_time,
        }


def system_groups(settings) -> Dict[str, WorkloadGroup]:
    """
    Built-in resource class groups

    Args:
        settings: List of {'name', 'request_min_resource_grant_percent'} dicts
    """
    groups = {}
    for item in settings:
        group = WorkloadGroup(
            name=item['name'],
            min_resource=0,
            cap_resource=FULL_RESOURCE,
            request_min_grant=to_basis_points(item['request_min_resource_grant_percent']),
            is_system=True,
        )
        group.validate()
        groups[group.key] = group
    return groups
