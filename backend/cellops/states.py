"""Status vocabularies shared by models, schemas and services."""

from __future__ import annotations

from enum import Enum


class StepType(str, Enum):
    MEASUREMENT = "measurement"
    MANIPULATION = "manipulation"
    INCUBATION = "incubation"
    OBSERVATION = "observation"
    PASSAGE = "passage"
    CELL_COUNTING = "cell_counting"
    MEDIA_CHANGE = "media_change"
    BANKING = "banking"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    PAUSED_QUALITY_HOLD = "paused_quality_hold"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ContainerStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    THAWED = "thawed"
    DISPOSED = "disposed"
    BLOCKED = "blocked"


class QualityHold(str, Enum):
    NONE = "none"
    SYSTEM = "system"
    QP = "qp"


class CultureStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    HOLD = "hold"
    CONTAMINATED = "contaminated"
    DISPOSED = "disposed"


class RiskFlag(str, Enum):
    NONE = "none"
    AT_RISK = "at_risk"
    CRITICAL = "critical"


class DeviationSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class DeviationStatus(str, Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class QPDecision(str, Enum):
    CONTINUE = "continue"
    QUARANTINE = "quarantine"
    DISPOSE = "dispose"


class BankType(str, Enum):
    MCB = "mcb"
    WCB = "wcb"


class UserRole(str, Enum):
    OPERATOR = "operator"
    QP = "qp"
    ADMIN = "admin"
