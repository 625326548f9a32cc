"""
Workload Classifier

Maps a request's session attributes to a workload group and importance.
"""

import itertools
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time
from typing import Any, Dict, List, Optional

from ..core import Importance, Session
from ..errors import ConfigurationError
from .governor import ResourceGovernor

logger = logging.getLogger(__name__)

# Specificity weights; a classifier's weight is the sum over the
# parameters it specifies.
WEIGHT_LOGIN = 64
WEIGHT_ROLE = 32
WEIGHT_LABEL = 16
WEIGHT_CONTEXT = 8
WEIGHT_TIME = 4


def _parse_clock(value: Any, option: str) -> dt_time:
    text = str(value).strip()
    if not re.fullmatch(r'\d{1,2}:\d{2}', text):
        raise ConfigurationError(f"{option} must be formatted HH:MM, got '{value}'")
    hours, minutes = (int(part) for part in text.split(':'))
    if hours > 23 or minutes > 59:
        raise ConfigurationError(f"{option} '{value}' is not a valid time of day")
    return dt_time(hours, minutes)


@dataclass
class WorkloadClassifier:
    """
    Classification rule

    Attributes:
        name: Unique classifier name
        group_name: Target workload group
        member_name: Login or role the rule applies to ('public' for everyone)
        label: Required OPTION (LABEL) value
        context: Required session 'wlm_context' value
        start_time / end_time: Time-of-day window (may wrap midnight)
        importance: Importance assigned; None uses the group's default
        is_system: Built-in resource class mapping
    """
    name: str
    group_name: str
    member_name: str
    label: Optional[str] = None
    context: Optional[str] = None
    start_time: Optional[dt_time] = None
    end_time: Optional[dt_time] = None
    importance: Optional[Importance] = None
    is_system: bool = False
    create_time: datetime = field(default_factory=datetime.now)
    sequence: int = 0

    @property
    def key(self) -> str:
        return self.name.lower()

    def weight(self, session: Optional[Session] = None) -> int:
        """Specificity; the member counts as a login when it names the session's login"""
        member = self.member_name.lower()
        if member == 'public':
            weight = 0
        elif session is not None and member == session.login_name.lower():
            weight = WEIGHT_LOGIN
        else:
            weight = WEIGHT_ROLE
        if self.label is not None:
            weight += WEIGHT_LABEL
        if self.context is not None:
            weight += WEIGHT_CONTEXT
        if self.start_time is not None:
            weight += WEIGHT_TIME
        return weight

    def in_window(self, now: datetime) -> bool:
        if self.start_time is None:
            return True
        clock = now.time()
        if self.start_time <= self.end_time:
            return self.start_time <= clock < self.end_time
        return clock >= self.start_time or clock < self.end_time

    def matches(self, session: Session, label: Optional[str], now: datetime) -> bool:
        if not session.is_member(self.member_name):
            return False
        if self.label is not None and (label or '').lower() != self.label.lower():
            return False
        if self.context is not None and (session.wlm_context or '').lower() != self.context.lower():
            return False
        return self.in_window(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'group_name': self.group_name,
            'member_name': self.member_name,
            'wlm_label': self.label,
            'wlm_context': self.context,
            'start_time': self.start_time.strftime('%H:%M') if self.start_time else None,
            'end_time': self.end_time.strftime('%H:%M') if self.end_time else None,
            'importance': self.importance.label if self.importance is not None else None,
            'is_system': self.is_system,
            'create_time': self.create_time,
        }


@dataclass
class Classification:
    """Result of classifying one request"""
    group_name: str
    importance: Importance
    classifier_name: Optional[str] = None


class WorkloadClassifierRegistry:
    """
    Classifier rule table

    Matching classifiers are ranked by specificity weight, then importance,
    then most recent creation; no match falls back to the default group.
    """

    def __init__(self, governor: ResourceGovernor, default_group: str = 'smallrc'):
        """
        Initialize classifier registry

        Args:
            governor: Owner of the workload groups
            default_group: Group used when no classifier matches
        """
        self.governor = governor
        self.default_group = default_group
        self._classifiers: Dict[str, WorkloadClassifier] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def install_system_classifiers(self, group_names: List[str]):
        """One classifier per resource class role -> same-named system group"""
        for name in group_names:
            self._add(WorkloadClassifier(name=name, group_name=name, member_name=name,
                                         is_system=True))

    def _add(self, classifier: WorkloadClassifier):
        with self._lock:
            if classifier.key in self._classifiers:
                raise ConfigurationError(f"Workload classifier '{classifier.name}' already exists")
            classifier.sequence = next(self._sequence)
            self._classifiers[classifier.key] = classifier

    def create(self, name: str, options: Dict[str, Any]) -> WorkloadClassifier:
        """
        CREATE WORKLOAD CLASSIFIER name WITH (...)

        Raises:
            ConfigurationError: Unknown group or option, invalid importance
                or time window, duplicate name
        """
        known = {'WORKLOAD_GROUP', 'MEMBERNAME', 'WLM_LABEL', 'WLM_CONTEXT',
                 'START_TIME', 'END_TIME', 'IMPORTANCE'}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown classifier option(s): {', '.join(sorted(unknown))}")
        if 'WORKLOAD_GROUP' not in options or 'MEMBERNAME' not in options:
            raise ConfigurationError(f"Classifier '{name}' requires WORKLOAD_GROUP and MEMBERNAME")

        group = self.governor.get_group(str(options['WORKLOAD_GROUP']))
        if group is None:
            raise ConfigurationError(
                f"Workload group '{options['WORKLOAD_GROUP']}' referenced by classifier "
                f"'{name}' does not exist")

        importance = None
        if 'IMPORTANCE' in options:
            try:
                importance = Importance.parse(options['IMPORTANCE'])
            except ValueError as e:
                raise ConfigurationError(str(e)) from None

        start = end = None
        if ('START_TIME' in options) != ('END_TIME' in options):
            raise ConfigurationError("START_TIME and END_TIME must be specified together")
        if 'START_TIME' in options:
            start = _parse_clock(options['START_TIME'], 'START_TIME')
            end = _parse_clock(options['END_TIME'], 'END_TIME')
            if start == end:
                raise ConfigurationError("START_TIME and END_TIME cannot be equal")

        member = str(options['MEMBERNAME'])
        classifier = WorkloadClassifier(
            name=name,
            group_name=group.name,
            member_name=member,
            label=str(options['WLM_LABEL']) if 'WLM_LABEL' in options else None,
            context=str(options['WLM_CONTEXT']) if 'WLM_CONTEXT' in options else None,
            start_time=start,
            end_time=end,
            importance=importance,
        )
        self._add(classifier)
        logger.info("Created workload classifier %s -> %s (member %s, importance %s)",
                    name, group.name, member,
                    importance.label if importance is not None else 'group default')
        return classifier

    def drop(self, name: str):
        """
        Raises:
            ConfigurationError: Unknown or system classifier
        """
        with self._lock:
            classifier = self._classifiers.get(name.lower())
            if classifier is None:
                raise ConfigurationError(f"Workload classifier '{name}' does not exist")
            if classifier.is_system:
                raise ConfigurationError(f"Cannot drop system classifier '{classifier.name}'")
            del self._classifiers[classifier.key]
        logger.info("Dropped workload classifier %s", classifier.name)

    def references(self, group_name: str) -> List[str]:
        """Names of non-system classifiers that target a group"""
        key = group_name.lower()
        return [c.name for c in self._classifiers.values()
                if c.group_name.lower() == key and not c.is_system]

    def classifiers(self) -> List[WorkloadClassifier]:
        return sorted(self._classifiers.values(), key=lambda c: c.sequence)

    def _importance_of(self, classifier: WorkloadClassifier) -> Importance:
        if classifier.importance is not None:
            return classifier.importance
        group = self.governor.get_group(classifier.group_name)
        return group.importance if group is not None else Importance.NORMAL

    def classify(self, session: Session, label: Optional[str] = None,
                 now: Optional[datetime] = None) -> Classification:
        """
        Pick the workload group and importance for a request

        Args:
            session: Submitting session
            label: Request label (OPTION (LABEL = ...))
            now: Classification time (defaults to now)

        Returns:
            Classification
        """
        now = now or datetime.now()
        candidates = [c for c in list(self._classifiers.values())
                      if self.governor.has_group(c.group_name) and c.matches(session, label, now)]
        if not candidates:
            group = self.governor.get_group(self.default_group)
            importance = group.importance if group is not None else Importance.NORMAL
            return Classification(self.default_group, importance)

        best = max(candidates, key=lambda c: (c.weight(session), self._importance_of(c), c.sequence))
        return Classification(best.group_name, self._importance_of(best), best.name)
