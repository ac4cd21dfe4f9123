"""
State Service - the one owner of a store instance.

Constructed once per process and passed to whoever needs it; there is no
module-level singleton. Wires:

    PathDocument -> ChangeLog (subscription)
    PathDocument + ChangeLog -> PersistenceManager
    PathDocument -> PatternLearner -> MisdiagnosisAdvisor

Lifecycle: start() loads state and installs the save timers; stop() cancels
them and performs the final save. A corrupt state file does not stop the
service: it starts empty, logs at ERROR and reports CORRUPT in
status_report().
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .advisor import MisdiagnosisAdvisor
from .change_log import ChangeLog, ChangeLogEntry, RollbackResult
from .config import StoreConfig
from .document import ChangeEvent, PathDocument, is_within, now_ms
from .errors import PersistenceCorruptError, PersistenceWriteError
from .learning_model import Advisory, GeneralizationResult, PatternAggregate
from .pattern_learner import LEARNING_ROOT, PatternLearner
from .persistence import LoadOutcome, LoadResult, PersistenceManager, SaveResult
from .scheduling import Ticker

logger = logging.getLogger("state_service")


# -----------------------------------------------------------------------------
# Free-text question patterns
# -----------------------------------------------------------------------------
_QUESTIONS = [
    ("best_solution", re.compile(r"^(?:what(?:'s| is) the )?best (?:solution|fix|method|approach) for (?P<subject>.+)$")),
    ("failed_methods", re.compile(r"^(?:what (?:failed|didn't work|did not work) for|failed methods for) (?P<subject>.+)$")),
    ("advisory", re.compile(r"^(?:advice|advise|warnings?|misdiagnos[ie]s) (?:for|on|about) (?P<subject>.+)$")),
    ("history", re.compile(r"^(?:history of|changes to) (?P<subject>[A-Za-z0-9_.\-]+)$")),
    ("value", re.compile(r"^(?:(?:what is the )?value of|get) (?P<subject>[A-Za-z0-9_.\-]+)$")),
    ("report", re.compile(r"^(?:learning )?(?:report|summary|stats|statistics)$")),
]


class StateService:
    """
    Facade used by the orchestration layer and the HTTP router.
    """

    def __init__(
        self,
        config: StoreConfig,
        ticker: Optional[Ticker] = None,
        codec: Any = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self._clock = clock or now_ms
        self.document = PathDocument(clock=self._clock)
        self.change_log = ChangeLog(
            max_entries=config.max_log_entries,
            policy=config.importance,
            archive_file=config.archive_path,
            clock=self._clock,
        )
        self.change_log.attach(self.document)
        self.persistence = PersistenceManager(
            self.document,
            self.change_log,
            config.state_path,
            ticker=ticker,
            codec=codec,
            debounce_seconds=config.debounce_seconds,
            save_interval=config.save_interval,
            max_attempts=config.max_save_attempts,
            backoff_seconds=config.backoff_seconds,
            persisted_log_entries=config.persisted_log_entries,
            on_error=self._on_save_error,
            clock=self._clock,
        )
        self.learner = PatternLearner(self.document, clock=self._clock)
        self.advisor = MisdiagnosisAdvisor(self.learner)

        self.load_result: Optional[LoadResult] = None
        self._running = False
        self._started_at: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> LoadResult:
        """Load saved state, rebuild the learning index, start save timers."""
        if self._running:
            logger.warning("State service already running")
            return self.load_result

        try:
            self.load_result = await self.persistence.load(timeout=self.config.save_timeout)
        except PersistenceCorruptError as e:
            logger.error(f"{e.message}; starting with an empty document")
            self.load_result = LoadResult(
                outcome=LoadOutcome.CORRUPT,
                file_path=str(self.config.state_path),
                error=e.message,
                backup_path=e.backup_path,
            )

        self.learner.rebuild_index()
        self.persistence.start()
        self._running = True
        self._started_at = self._clock()
        logger.info(f"State service started (load outcome: {self.load_result.outcome.value})")
        return self.load_result

    async def stop(self) -> SaveResult:
        """Final save. Raises PersistenceWriteError if it fails."""
        self._running = False
        result = await self.persistence.stop(timeout=self.config.save_timeout)
        logger.info("State service stopped")
        return result

    async def flush(self, timeout: Optional[float] = None) -> SaveResult:
        """Explicit save, e.g. before process exit."""
        return await self.persistence.save(
            timeout=timeout if timeout is not None else self.config.save_timeout
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get(self, path: Optional[str] = None) -> Any:
        return self.document.get(path)

    def set(self, path: str, value: Any, metadata: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        event = self.document.set(path, value, metadata=metadata)
        self._schedule_save()
        return event

    def history(
        self,
        path: str,
        window_ms: Optional[int] = None,
        include_archived: bool = False,
    ) -> List[ChangeLogEntry]:
        entries = self.change_log.history(path, window_ms)
        if include_archived:
            since = self._clock() - window_ms if window_ms is not None else None
            archived = self.change_log.load_archived(path=path, since=since)
            entries = sorted(archived + entries, key=lambda e: (e.timestamp, e.seq))
        return entries

    def revert_since(self, since: int, path: Optional[str] = None) -> RollbackResult:
        touches_learning = any(
            is_within(entry.path, LEARNING_ROOT)
            for entry in self.change_log.query(path=path, since=since)
        )
        result = self.change_log.revert_since(self.document, since, path=path)
        if result.restored:
            if touches_learning:
                # The learner's index must follow the restored attempt history
                self.learner.rebuild_index()
            self._schedule_save()
        return result

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def report_fix_attempt(
        self,
        issue_id: str,
        issue_type: str,
        component: str,
        fix_method: str,
        result: str,
        duration_ms: int,
        timestamp_start: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> PatternAggregate:
        if timestamp_start is None and isinstance(duration_ms, (int, float)):
            timestamp_start = self._clock() - int(duration_ms)
        aggregate = self.learner.record_attempt({
            "issue_id": issue_id,
            "issue_type": issue_type,
            "component": component,
            "fix_method": fix_method,
            "result": result,
            "timestamp_start": timestamp_start,
            "duration_ms": duration_ms,
            "details": details or {},
            "error_message": error_message,
        })
        self._schedule_save()
        return aggregate

    def advise(
        self,
        issue_type: str,
        error_message: Optional[str] = None,
        component: Optional[str] = None,
    ) -> Advisory:
        return self.advisor.query(issue_type, error_message=error_message, component=component)

    def generalize(self) -> GeneralizationResult:
        result = self.learner.generalize()
        if result.changed:
            self._schedule_save()
        return result

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status_report(self) -> Dict[str, Any]:
        persistence = self.persistence
        report = self.learner.get_learning_report(limit=5)
        return {
            "version": __version__,
            "running": self._running,
            "started_at": self._started_at,
            "load": self.load_result.to_dict() if self.load_result else None,
            "persistence": {
                "state_file": str(persistence.state_file),
                "dirty": persistence.dirty,
                "save_count": persistence.save_count,
                "last_save": persistence.last_save.to_dict() if persistence.last_save else None,
                "last_error": persistence.last_error.to_dict() if persistence.last_error else None,
            },
            "document": {
                "update_count": self.document.update_count,
            },
            "change_log": {
                "entries": len(self.change_log),
                "max_entries": self.change_log.max_entries,
                "evicted": self.change_log.evicted_count,
                "serialization_failures": self.change_log.serialization_failures,
            },
            "learning": {
                "total_attempts": report["total_attempts"],
                "total_patterns": report["total_patterns"],
                "issue_types": report["issue_types"],
                "time_wasted": report["time_wasted"],
            },
        }

    def ask(self, question: str) -> Dict[str, Any]:
        """
        Route a free-text question to the matching lookup.

        Understood forms: "best solution for X", "what failed for X",
        "advice for X", "history of PATH", "value of PATH", "report".
        """
        text = (question or "").strip().rstrip("?").strip()
        lowered = text.lower()
        for intent, pattern in _QUESTIONS:
            match = pattern.match(lowered)
            if not match:
                continue
            subject = None
            if "subject" in pattern.groupindex:
                start, end = match.span("subject")
                subject = text[start:end].strip()
            return {"intent": intent, "subject": subject, "answer": self._answer(intent, subject)}

        return {
            "intent": "unknown",
            "subject": None,
            "answer": None,
            "supported": [
                "best solution for <issue type>",
                "what failed for <issue type>",
                "advice for <issue type>",
                "history of <path>",
                "value of <path>",
                "report",
            ],
        }

    def _answer(self, intent: str, subject: Optional[str]) -> Any:
        if intent == "best_solution":
            best = self.learner.get_best_solution_for_issue_type(subject)
            return best.to_dict() if best else None
        if intent == "failed_methods":
            return [a.to_dict() for a in self.learner.get_failed_methods(subject)]
        if intent == "advisory":
            return self.advise(subject).to_dict()
        if intent == "history":
            return [e.to_dict() for e in self.history(subject)]
        if intent == "value":
            return self.get(subject)
        return self.learner.get_learning_report()

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _schedule_save(self) -> None:
        if self._running:
            self.persistence.request_save()

    def _on_save_error(self, error: PersistenceWriteError) -> None:
        logger.error(f"Scheduled save failed, previous state file kept: {error.message}")
