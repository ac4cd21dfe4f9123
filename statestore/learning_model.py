"""
Learning Data Models

Frozen dataclasses for fix attempts and the aggregates derived from them.

CONSTRAINTS:
- FixAttemptRecord is never mutated once created
- Aggregates are DERIVED: always recomputable from the stored attempts
- successes + failures <= frequency (partial results count toward frequency only)
- success_rate == successes / frequency, recomputed on every update
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .document import SEGMENT_PATTERN

PATTERN_KEY_SEPARATOR = "::"


def pattern_key(issue_type: str, fix_method: str) -> str:
    """Composite key used under learning.patterns."""
    return f"{issue_type}{PATTERN_KEY_SEPARATOR}{fix_method}"


# -----------------------------------------------------------------------------
# Fix Result Enum
# -----------------------------------------------------------------------------
class FixResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


# -----------------------------------------------------------------------------
# Fix Attempt Record (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class FixAttemptRecord:
    """
    One concluded effort to resolve an issue with a named method.

    issue_id doubles as a path segment under learning.fixAttempts, so it is
    restricted to letters, digits, '_' and '-'.
    """
    issue_id: str
    issue_type: str
    component: str
    fix_method: str
    result: str  # FixResult value
    timestamp_start: int  # ms since epoch
    duration_ms: int
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result == FixResult.SUCCESS.value

    @property
    def failed(self) -> bool:
        return self.result == FixResult.FAILURE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "issue_type": self.issue_type,
            "component": self.component,
            "fix_method": self.fix_method,
            "result": self.result,
            "timestamp_start": self.timestamp_start,
            "duration_ms": self.duration_ms,
            "details": dict(self.details),
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FixAttemptRecord":
        return cls(
            issue_id=data["issue_id"],
            issue_type=data["issue_type"],
            component=data.get("component") or "",
            fix_method=data["fix_method"],
            result=data["result"],
            timestamp_start=int(data.get("timestamp_start") or 0),
            duration_ms=int(data.get("duration_ms") or 0),
            details=dict(data.get("details") or {}),
            error_message=data.get("error_message"),
        )

    @staticmethod
    def validate(data: Dict[str, Any]) -> List[str]:
        """Problems with a candidate record, empty when it is acceptable."""
        errors: List[str] = []
        for name in ("issue_id", "issue_type", "fix_method"):
            value = data.get(name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{name} is required")
        issue_id = data.get("issue_id")
        if isinstance(issue_id, str) and issue_id and not SEGMENT_PATTERN.match(issue_id):
            errors.append("issue_id may only contain letters, digits, '_' and '-'")
        if data.get("result") not in {r.value for r in FixResult}:
            errors.append(f"result must be one of {[r.value for r in FixResult]}")
        duration = data.get("duration_ms")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            errors.append("duration_ms must be a non-negative number")
        timestamp = data.get("timestamp_start")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or timestamp < 0:
            errors.append("timestamp_start must be a non-negative number")
        component = data.get("component")
        if component is not None and not isinstance(component, str):
            errors.append("component must be a string")
        details = data.get("details")
        if details is not None and not isinstance(details, dict):
            errors.append("details must be a mapping")
        message = data.get("error_message")
        if message is not None and not isinstance(message, str):
            errors.append("error_message must be a string")
        return errors


# -----------------------------------------------------------------------------
# Pattern Aggregate (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PatternAggregate:
    """
    Statistics for one (issue_type, fix_method) pair.

    best_known_solution and misdiagnosis_method describe the whole issue
    type and are rewritten on every aggregate of that type after each attempt.
    """
    issue_type: str
    fix_method: str
    frequency: int
    successes: int
    failures: int
    success_rate: float
    time_wasted: int  # sum of duration_ms of failed attempts
    best_known_solution: Optional[str]
    misdiagnosis_method: Optional[str]
    components: Tuple[str, ...] = ()
    last_updated: int = 0

    @property
    def key(self) -> str:
        return pattern_key(self.issue_type, self.fix_method)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "fix_method": self.fix_method,
            "frequency": self.frequency,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.success_rate,
            "time_wasted": self.time_wasted,
            "best_known_solution": self.best_known_solution,
            "misdiagnosis_method": self.misdiagnosis_method,
            "components": list(self.components),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatternAggregate":
        return cls(
            issue_type=data["issue_type"],
            fix_method=data["fix_method"],
            frequency=int(data.get("frequency", 0)),
            successes=int(data.get("successes", 0)),
            failures=int(data.get("failures", 0)),
            success_rate=float(data.get("success_rate", 0.0)),
            time_wasted=int(data.get("time_wasted", 0)),
            best_known_solution=data.get("best_known_solution"),
            misdiagnosis_method=data.get("misdiagnosis_method"),
            components=tuple(data.get("components", [])),
            last_updated=int(data.get("last_updated", 0)),
        )


@dataclass(frozen=True)
class BestSolution:
    method: str
    success_rate: float
    frequency: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "success_rate": self.success_rate,
            "frequency": self.frequency,
        }


# -----------------------------------------------------------------------------
# Misdiagnosis Pattern (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class MisdiagnosisPattern:
    """
    A method that failed for an issue type, with the symptoms seen.

    symptom is a '|'-joined list of error messages; any of them matching a
    later error message is a hit.
    """
    issue_type: str
    wrong_approach: str
    symptom: str
    correct_approach: Optional[str]
    actual_root_cause: Optional[str]
    frequency: int
    time_wasted: int
    components: Tuple[str, ...] = ()
    last_seen: int = 0

    @property
    def key(self) -> str:
        return pattern_key(self.issue_type, self.wrong_approach)

    def symptoms(self) -> List[str]:
        return [part.strip() for part in self.symptom.split("|") if part.strip()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "wrong_approach": self.wrong_approach,
            "symptom": self.symptom,
            "correct_approach": self.correct_approach,
            "actual_root_cause": self.actual_root_cause,
            "frequency": self.frequency,
            "time_wasted": self.time_wasted,
            "components": list(self.components),
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MisdiagnosisPattern":
        return cls(
            issue_type=data["issue_type"],
            wrong_approach=data["wrong_approach"],
            symptom=data.get("symptom") or "",
            correct_approach=data.get("correct_approach"),
            actual_root_cause=data.get("actual_root_cause"),
            frequency=int(data.get("frequency", 0)),
            time_wasted=int(data.get("time_wasted", 0)),
            components=tuple(data.get("components", [])),
            last_seen=int(data.get("last_seen", 0)),
        )


# -----------------------------------------------------------------------------
# Advisory (Frozen - Immutable)
# -----------------------------------------------------------------------------
class MatchType(str, Enum):
    """How the advisor found the issue type."""
    EXACT = "exact"
    GENERALIZED = "generalized"
    FUZZY = "fuzzy"
    NONE = "none"


@dataclass(frozen=True)
class AdvisoryWarning:
    issue_type: str
    method: str
    failure_count: int
    time_wasted: int
    actual_root_cause: Optional[str] = None

    @property
    def message(self) -> str:
        return (
            f"'{self.method}' failed {self.failure_count} time(s) for {self.issue_type} "
            f"({self.time_wasted}ms wasted)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "method": self.method,
            "failure_count": self.failure_count,
            "time_wasted": self.time_wasted,
            "actual_root_cause": self.actual_root_cause,
            "message": self.message,
        }


@dataclass(frozen=True)
class Advisory:
    """Answer to 'what should I avoid for this issue?'"""
    issue_type: str
    warnings: Tuple[AdvisoryWarning, ...] = ()
    correct_approach: Optional[str] = None
    estimated_time_savings: Optional[int] = None
    match_type: str = MatchType.NONE.value
    matched_issue_types: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type": self.issue_type,
            "warnings": [w.to_dict() for w in self.warnings],
            "correct_approach": self.correct_approach,
            "estimated_time_savings": self.estimated_time_savings,
            "match_type": self.match_type,
            "matched_issue_types": list(self.matched_issue_types),
        }


# -----------------------------------------------------------------------------
# Generalization Result (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class GeneralizationResult:
    # specific name -> general name, added by this run
    issue_type_rules: Dict[str, str]
    fix_method_rules: Dict[str, str]
    aggregates_before: int
    aggregates_after: int

    @property
    def changed(self) -> bool:
        return bool(self.issue_type_rules or self.fix_method_rules)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_type_rules": dict(self.issue_type_rules),
            "fix_method_rules": dict(self.fix_method_rules),
            "aggregates_before": self.aggregates_before,
            "aggregates_after": self.aggregates_after,
            "changed": self.changed,
        }
