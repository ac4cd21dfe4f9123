"""
Pattern Learner

Turns concluded fix attempts into per (issue type, fix method) statistics and
answers "what works for this issue type?".

CONSTRAINTS:
- A malformed record is rejected before anything is written
- Attempts are stored under learning.fixAttempts.<issue_id>; everything else
  under learning.* is DERIVED and rebuildable from them plus the
  generalization rules
- After every attempt all aggregates of its issue type are rewritten, so
  best_known_solution is never stale on a sibling aggregate
- The in-memory index is a cache; the document is the source of truth

Best solution tie-break: highest success rate, then highest frequency, then
most recently updated. Only methods with at least one success qualify.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .document import OWNER_LEARNER, PathDocument, now_ms
from .errors import InvalidRecordError, InvalidValueError
from .generalizer import normalize_key
from .learning_model import (
    BestSolution,
    FixAttemptRecord,
    GeneralizationResult,
    MisdiagnosisPattern,
    PatternAggregate,
)
from .values import normalize_value

logger = logging.getLogger("pattern_learner")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
LEARNING_ROOT = "learning"
FIX_ATTEMPTS_PATH = "learning.fixAttempts"
PATTERNS_PATH = "learning.patterns"
MISDIAGNOSIS_PATH = "learning.misdiagnosisPatterns"
RULES_PATH = "learning.generalizationRules"

MAX_SYMPTOMS = 5
MAX_SYMPTOM_CHARS = 200

_WRITE_META = {"source": "pattern_learner"}


@dataclass
class _MethodStats:
    """Mutable running totals behind one PatternAggregate."""
    frequency: int = 0
    successes: int = 0
    failures: int = 0
    time_wasted: int = 0
    last_updated: int = 0
    order: int = 0  # position of the latest attempt, for recency tie-breaks
    last_failure_order: int = 0
    last_failure_at: int = 0
    components: List[str] = field(default_factory=list)
    symptoms: List[str] = field(default_factory=list)


class PatternLearner:
    """
    Aggregates fix attempts recorded in a PathDocument.
    """

    def __init__(self, document: PathDocument, clock: Optional[Callable[[], int]] = None):
        self._document = document
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        self._index: Dict[Tuple[str, str], _MethodStats] = {}
        self._root_causes: Dict[str, str] = {}
        self._approach_hints: Dict[str, str] = {}
        self._order = 0
        self._attempt_count = 0

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_attempt(self, record: Union[FixAttemptRecord, Dict[str, Any]]) -> PatternAggregate:
        """
        Store one concluded attempt and update its aggregates.

        Raises InvalidRecordError without touching any state when the record
        is malformed.
        """
        record = self._coerce(record)
        with self._lock:
            issue_type, fix_method = self._resolve(record.issue_type, record.fix_method)

            self._document.update(
                f"{FIX_ATTEMPTS_PATH}.{record.issue_id}",
                lambda history: (history if isinstance(history, list) else []) + [record.to_dict()],
                default=[],
                owner=OWNER_LEARNER,
                metadata=_WRITE_META,
            )
            self._apply(record, issue_type, fix_method)
            self._write_issue_types([issue_type])

            aggregate = self.get_aggregate(issue_type, fix_method)
            logger.info(
                f"Recorded {record.result} for {issue_type} via {fix_method} "
                f"(frequency={aggregate.frequency}, success_rate={aggregate.success_rate:.2f})"
            )
            return aggregate

    def _coerce(self, record: Union[FixAttemptRecord, Dict[str, Any]]) -> FixAttemptRecord:
        data = record.to_dict() if isinstance(record, FixAttemptRecord) else record
        if not isinstance(data, dict):
            raise InvalidRecordError(["record must be a mapping"])
        errors = FixAttemptRecord.validate(data)
        if not errors:
            try:
                normalize_value(data.get("details") or {}, "details")
            except InvalidValueError as e:
                errors.append(e.message)
        if errors:
            logger.warning(f"Rejected fix attempt record: {'; '.join(errors)}")
            raise InvalidRecordError(errors, dict(data))
        return record if isinstance(record, FixAttemptRecord) else FixAttemptRecord.from_dict(data)

    # -------------------------------------------------------------------------
    # Queries (Read-Only)
    # -------------------------------------------------------------------------

    def get_aggregate(self, issue_type: str, fix_method: str) -> Optional[PatternAggregate]:
        with self._lock:
            issue_type, fix_method = self._resolve(issue_type, fix_method)
            stats = self._index.get((issue_type, fix_method))
            if stats is None:
                return None
            best = self._best_for(issue_type)
            return self._build_aggregate(
                issue_type, fix_method, stats, best, self._misdiagnosis_method(issue_type)
            )

    def get_aggregates(self, issue_type: str) -> List[PatternAggregate]:
        """All aggregates of an issue type, most frequent first."""
        with self._lock:
            issue_type = self.resolve_issue_type(issue_type)
            best = self._best_for(issue_type)
            misdiagnosis = self._misdiagnosis_method(issue_type)
            aggregates = [
                self._build_aggregate(issue_type, method, stats, best, misdiagnosis)
                for (itype, method), stats in self._index.items()
                if itype == issue_type
            ]
        return sorted(aggregates, key=lambda a: (-a.frequency, a.fix_method))

    def get_best_solution_for_issue_type(self, issue_type: str) -> Optional[BestSolution]:
        with self._lock:
            return self._best_for(self.resolve_issue_type(issue_type))

    def get_failed_methods(self, issue_type: str) -> List[PatternAggregate]:
        """Methods that failed at least once, worst first."""
        failed = [a for a in self.get_aggregates(issue_type) if a.failures > 0]
        return sorted(failed, key=lambda a: (-a.failures, -a.time_wasted, a.fix_method))

    def get_misdiagnosis_patterns(self, issue_type: Optional[str] = None) -> List[MisdiagnosisPattern]:
        with self._lock:
            types = [self.resolve_issue_type(issue_type)] if issue_type else self.issue_types()
            patterns: List[MisdiagnosisPattern] = []
            for itype in types:
                patterns.extend(self._build_misdiagnosis(itype))
        return patterns

    def issue_types(self) -> List[str]:
        with self._lock:
            return sorted({itype for itype, _ in self._index})

    def has_issue_type(self, issue_type: str) -> bool:
        with self._lock:
            return any(itype == issue_type for itype, _ in self._index)

    def resolve_issue_type(self, issue_type: str) -> str:
        """Issue type after generalization rules."""
        return self._rules()["issue_types"].get(issue_type, issue_type)

    def get_learning_report(self, limit: int = 10) -> Dict[str, Any]:
        """Totals plus the most frequent patterns."""
        with self._lock:
            aggregates = [
                self._build_aggregate(
                    itype, method, stats,
                    self._best_for(itype), self._misdiagnosis_method(itype),
                )
                for (itype, method), stats in self._index.items()
            ]
            rules = self._rules()
            attempts = self._attempt_count

        successes = sum(a.successes for a in aggregates)
        failures = sum(a.failures for a in aggregates)
        top = sorted(aggregates, key=lambda a: (-a.frequency, a.key))[:limit]
        return {
            "total_attempts": attempts,
            "total_patterns": len(aggregates),
            "issue_types": len({a.issue_type for a in aggregates}),
            "successes": successes,
            "failures": failures,
            "success_rate": successes / attempts if attempts else 0.0,
            "time_wasted": sum(a.time_wasted for a in aggregates),
            "generalization_rules": len(rules["issue_types"]) + len(rules["fix_methods"]),
            "top_patterns": [a.to_dict() for a in top],
        }

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def rebuild_index(self) -> int:
        """
        Recompute the index from learning.fixAttempts and the rules.

        Rewrites the derived sections only when they differ. Returns the
        number of attempts indexed.
        """
        with self._lock:
            self._index = {}
            self._root_causes = {}
            self._approach_hints = {}
            self._order = 0
            self._attempt_count = 0

            records: List[FixAttemptRecord] = []
            stored = self._document.get(FIX_ATTEMPTS_PATH) or {}
            if isinstance(stored, dict):
                for issue_id, history in stored.items():
                    if not isinstance(history, list):
                        continue
                    for data in history:
                        if not isinstance(data, dict) or FixAttemptRecord.validate(data):
                            logger.warning(f"Skipping malformed stored attempt for {issue_id}")
                            continue
                        records.append(FixAttemptRecord.from_dict(data))

            records.sort(key=lambda r: r.timestamp_start)
            for record in records:
                self._apply(record, *self._resolve(record.issue_type, record.fix_method))

            self._write_all()
            logger.info(f"Learning index rebuilt from {len(records)} attempts ({len(self._index)} patterns)")
            return len(records)

    def generalize(self) -> GeneralizationResult:
        """
        Merge issue types and fix methods that differ only in volatile parts
        (line numbers, file paths, ids, numbers, quoted literals).

        Names are merged only when at least two of them share a normalized
        form. Running it again on generalized data changes nothing.
        """
        with self._lock:
            before = len(self._index)
            rules = self._rules()
            added: Dict[str, Dict[str, str]] = {"issue_types": {}, "fix_methods": {}}

            for kind, names in (
                ("issue_types", {itype for itype, _ in self._index}),
                ("fix_methods", {method for _, method in self._index}),
            ):
                groups: Dict[str, List[str]] = {}
                for name in names:
                    groups.setdefault(normalize_key(name), []).append(name)
                for general, members in groups.items():
                    if len(members) < 2:
                        continue
                    for name in members:
                        if name != general:
                            rules[kind][name] = general
                            added[kind][name] = general

            if not added["issue_types"] and not added["fix_methods"]:
                return GeneralizationResult({}, {}, before, before)

            self._document.set(RULES_PATH, rules, owner=OWNER_LEARNER, metadata=_WRITE_META)
            self.rebuild_index()
            logger.info(
                f"Generalized {len(added['issue_types'])} issue types and "
                f"{len(added['fix_methods'])} fix methods ({before} -> {len(self._index)} patterns)"
            )
            return GeneralizationResult(
                added["issue_types"], added["fix_methods"], before, len(self._index)
            )

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _rules(self) -> Dict[str, Dict[str, str]]:
        stored = self._document.get(RULES_PATH)
        stored = stored if isinstance(stored, dict) else {}
        return {
            "issue_types": dict(stored.get("issue_types") or {}),
            "fix_methods": dict(stored.get("fix_methods") or {}),
        }

    def _resolve(self, issue_type: str, fix_method: str) -> Tuple[str, str]:
        rules = self._rules()
        return (
            rules["issue_types"].get(issue_type, issue_type),
            rules["fix_methods"].get(fix_method, fix_method),
        )

    def _apply(self, record: FixAttemptRecord, issue_type: str, fix_method: str) -> None:
        stats = self._index.setdefault((issue_type, fix_method), _MethodStats())
        self._order += 1
        self._attempt_count += 1

        stats.frequency += 1
        stats.order = self._order
        stats.last_updated = max(stats.last_updated, record.timestamp_start + record.duration_ms)
        if record.component and record.component not in stats.components:
            stats.components.append(record.component)

        if record.succeeded:
            stats.successes += 1
        elif record.failed:
            stats.failures += 1
            stats.time_wasted += record.duration_ms
            stats.last_failure_order = self._order
            stats.last_failure_at = record.timestamp_start
            if record.error_message:
                symptom = record.error_message.replace("|", "/").strip()[:MAX_SYMPTOM_CHARS]
                if symptom and symptom not in stats.symptoms:
                    stats.symptoms = (stats.symptoms + [symptom])[-MAX_SYMPTOMS:]

        root_cause = record.details.get("actual_root_cause")
        if isinstance(root_cause, str) and root_cause:
            self._root_causes[issue_type] = root_cause
        hint = record.details.get("correct_approach")
        if isinstance(hint, str) and hint:
            self._approach_hints[issue_type] = hint

    def _best_for(self, issue_type: str) -> Optional[BestSolution]:
        candidates = [
            (stats.successes / stats.frequency, stats.frequency, stats.order, method)
            for (itype, method), stats in self._index.items()
            if itype == issue_type and stats.successes > 0
        ]
        if not candidates:
            return None
        rate, frequency, _, method = max(candidates)
        return BestSolution(method=method, success_rate=rate, frequency=frequency)

    def _misdiagnosis_method(self, issue_type: str) -> Optional[str]:
        failed = [
            (stats.last_failure_order, method)
            for (itype, method), stats in self._index.items()
            if itype == issue_type and stats.failures > 0
        ]
        return max(failed)[1] if failed else None

    def _build_aggregate(
        self,
        issue_type: str,
        fix_method: str,
        stats: _MethodStats,
        best: Optional[BestSolution],
        misdiagnosis_method: Optional[str],
    ) -> PatternAggregate:
        return PatternAggregate(
            issue_type=issue_type,
            fix_method=fix_method,
            frequency=stats.frequency,
            successes=stats.successes,
            failures=stats.failures,
            success_rate=stats.successes / stats.frequency if stats.frequency else 0.0,
            time_wasted=stats.time_wasted,
            best_known_solution=best.method if best else None,
            misdiagnosis_method=misdiagnosis_method,
            components=tuple(stats.components),
            last_updated=stats.last_updated,
        )

    def _build_misdiagnosis(self, issue_type: str) -> List[MisdiagnosisPattern]:
        best = self._best_for(issue_type)
        correct = best.method if best else self._approach_hints.get(issue_type)
        patterns = []
        for (itype, method), stats in sorted(self._index.items()):
            if itype != issue_type or stats.failures == 0:
                continue
            patterns.append(MisdiagnosisPattern(
                issue_type=issue_type,
                wrong_approach=method,
                symptom="|".join(stats.symptoms) or issue_type,
                correct_approach=correct,
                actual_root_cause=self._root_causes.get(issue_type),
                frequency=stats.failures,
                time_wasted=stats.time_wasted,
                components=tuple(stats.components),
                last_seen=stats.last_failure_at,
            ))
        return patterns

    def _write_issue_types(self, issue_types: List[str]) -> None:
        """Rewrite the derived entries of the given issue types."""
        targets = set(issue_types)
        aggregates: Dict[str, Any] = {}
        for itype in targets:
            aggregates.update({a.key: a.to_dict() for a in self.get_aggregates(itype)})
        misdiagnosis = {
            p.key: p.to_dict() for itype in targets for p in self._build_misdiagnosis(itype)
        }

        def _replace(section: Dict[str, Dict[str, Any]], entries: Dict[str, Any]) -> Dict[str, Any]:
            kept = {
                key: value for key, value in (section or {}).items()
                if not (isinstance(value, dict) and value.get("issue_type") in targets)
            }
            kept.update(entries)
            return kept

        self._document.update(
            PATTERNS_PATH, lambda s: _replace(s, aggregates),
            default={}, owner=OWNER_LEARNER, metadata=_WRITE_META,
        )
        self._document.update(
            MISDIAGNOSIS_PATH, lambda s: _replace(s, misdiagnosis),
            default={}, owner=OWNER_LEARNER, metadata=_WRITE_META,
        )

    def _write_all(self) -> None:
        aggregates = {
            a.key: a.to_dict() for itype in self.issue_types() for a in self.get_aggregates(itype)
        }
        misdiagnosis = {p.key: p.to_dict() for p in self.get_misdiagnosis_patterns()}
        for path, value in ((PATTERNS_PATH, aggregates), (MISDIAGNOSIS_PATH, misdiagnosis)):
            current = self._document.get(path)
            if current != value and (value or current is not None):
                self._document.set(path, value, owner=OWNER_LEARNER, metadata=_WRITE_META)
