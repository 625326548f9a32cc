"""
Session and request data models
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional, List, Set, Dict, Any

from .result import RequestStep


class Importance(IntEnum):
    """Total order used to break ties in admission and locking"""
    LOW = 0
    BELOW_NORMAL = 1
    NORMAL = 2
    ABOVE_NORMAL = 3
    HIGH = 4

    @classmethod
    def parse(cls, value: str) -> "Importance":
        """
        Parse an importance level

        Accepts 'high', 'HIGH', 'above_normal', 'Above Normal', 'AboveNormal' ...

        Raises:
            ValueError: Unknown level
        """
        key = str(value).upper().replace(' ', '').replace('_', '')
        for member in cls:
            if member.name.replace('_', '') == key:
                return member
        raise ValueError(f"Unknown importance '{value}'")

    @property
    def label(self) -> str:
        return self.name.lower()


class RequestStatus(Enum):
    """Request lifecycle status"""
    QUEUED = "Queued"
    RUNNING = "Running"
    SUSPENDED = "Suspended"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_finished(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.FAILED,
                        RequestStatus.CANCELLED)


@dataclass
class Session:
    """
    Client session

    Attributes:
        session_id: Unique identifier (SID<n>)
        login_name: Login the session authenticated as
        roles: Database roles the login is a member of
        app_name: Optional application name
        wlm_context: Value set through sp_set_session_context 'wlm_context'
        result_set_caching: Session override (None follows the database setting)
    """
    session_id: str
    login_name: str
    roles: Set[str] = field(default_factory=set)
    app_name: Optional[str] = None
    wlm_context: Optional[str] = None
    result_set_caching: Optional[bool] = None
    login_time: datetime = field(default_factory=datetime.now)
    status: str = "Active"
    query_count: int = 0

    def is_member(self, name: str) -> bool:
        """Login name or role membership test (case-insensitive)"""
        key = name.lower()
        if key == 'public':
            return True
        if key == self.login_name.lower():
            return True
        return key in {role.lower() for role in self.roles}


@dataclass
class Request:
    """
    A submitted statement and everything known about its execution

    Created at submission; status and timestamps are mutated by the
    resource governor and the execution engine.
    """
    request_id: str
    session_id: str
    login_name: str
    command: str
    submit_time: datetime
    label: Optional[str] = None
    status: RequestStatus = RequestStatus.QUEUED
    start_time: Optional[datetime] = None
    end_compile_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    importance: Optional[Importance] = None
    group_name: Optional[str] = None
    classifier_name: Optional[str] = None
    resource_allocation_percentage: Optional[float] = None
    result_cache_hit: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    steps: List[RequestStep] = field(default_factory=list)

    # Monotonic submission sequence (tie-break for equal submit times)
    sequence: int = 0

    @property
    def total_elapsed_time(self) -> float:
        """Milliseconds since submission (or until completion)"""
        end = self.end_time or datetime.now()
        return (end - self.submit_time).total_seconds() * 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request_id': self.request_id,
            'session_id': self.session_id,
            'login_name': self.login_name,
            'status': self.status.value,
            'submit_time': self.submit_time,
            'start_time': self.start_time,
            'end_compile_time': self.end_compile_time,
            'end_time': self.end_time,
            'total_elapsed_time': round(self.total_elapsed_time, 3),
            'command': self.command,
            'label': self.label,
            'importance': self.importance.label if self.importance is not None else None,
            'group_name': self.group_name,
            'classifier_name': self.classifier_name,
            'resource_allocation_percentage': self.resource_allocation_percentage,
            'result_cache_hit': self.result_cache_hit,
            'error_id': self.error_type,
            'error': self.error,
        }
