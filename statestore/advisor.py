"""
Misdiagnosis Advisor

Read-only answers to "what has already failed for this issue?", asked
before a fix is attempted.

Lookup order:
1. exact issue type
2. generalized issue type (generalization rules, then normalize_key)
3. fuzzy, only when an error message is given: the message against stored
   symptom strings, or a shared error category

Unknown issues yield an empty Advisory, never an error.
"""

import logging
from typing import List, Optional, Tuple

from .generalizer import generalize_error_message, normalize_key
from .learning_model import Advisory, AdvisoryWarning, MatchType, MisdiagnosisPattern
from .pattern_learner import PatternLearner

logger = logging.getLogger("advisor")


class MisdiagnosisAdvisor:
    """Query layer over a PatternLearner. Holds no state of its own."""

    def __init__(self, learner: PatternLearner):
        self._learner = learner

    def query(
        self,
        issue_type: Optional[str],
        error_message: Optional[str] = None,
        component: Optional[str] = None,
    ) -> Advisory:
        issue_type = issue_type or ""
        matched, match_type = self._match(issue_type, error_message, component)
        if not matched:
            logger.debug(f"No learned patterns for {issue_type!r}")
            return Advisory(issue_type=issue_type)

        warnings: List[AdvisoryWarning] = []
        for itype in matched:
            for pattern in self._learner.get_misdiagnosis_patterns(itype):
                if not _component_matches(pattern, component):
                    continue
                warnings.append(AdvisoryWarning(
                    issue_type=pattern.issue_type,
                    method=pattern.wrong_approach,
                    failure_count=pattern.frequency,
                    time_wasted=pattern.time_wasted,
                    actual_root_cause=pattern.actual_root_cause,
                ))
        warnings.sort(key=lambda w: (-w.time_wasted, -w.failure_count, w.method))

        correct_approach = None
        for itype in matched:
            best = self._learner.get_best_solution_for_issue_type(itype)
            if best is not None:
                correct_approach = best.method
                break

        return Advisory(
            issue_type=issue_type,
            warnings=tuple(warnings),
            correct_approach=correct_approach,
            estimated_time_savings=sum(w.time_wasted for w in warnings) if warnings else None,
            match_type=match_type.value,
            matched_issue_types=tuple(matched),
        )

    def _match(
        self,
        issue_type: str,
        error_message: Optional[str],
        component: Optional[str],
    ) -> Tuple[List[str], MatchType]:
        if issue_type and self._learner.has_issue_type(issue_type):
            return [issue_type], MatchType.EXACT

        if issue_type:
            for candidate in (self._learner.resolve_issue_type(issue_type), normalize_key(issue_type)):
                if candidate != issue_type and self._learner.has_issue_type(candidate):
                    return [candidate], MatchType.GENERALIZED

        if not error_message:
            return [], MatchType.NONE

        matched: List[str] = []
        search_text = error_message.lower()
        search_category = generalize_error_message(error_message)
        for pattern in self._learner.get_misdiagnosis_patterns():
            if pattern.issue_type in matched or not _component_matches(pattern, component):
                continue
            if _symptom_matches(pattern, search_text, search_category):
                matched.append(pattern.issue_type)

        return (matched, MatchType.FUZZY) if matched else ([], MatchType.NONE)


def _symptom_matches(
    pattern: MisdiagnosisPattern,
    search_text: str,
    search_category: Optional[str],
) -> bool:
    if not search_text:
        return False
    for symptom in pattern.symptoms():
        if symptom.lower() in search_text:
            return True
        category = generalize_error_message(symptom)
        if search_category and search_category != "unknown_error" and category == search_category:
            return True
    return False


def _component_matches(pattern: MisdiagnosisPattern, component: Optional[str]) -> bool:
    if not component or not pattern.components:
        return True
    return component in pattern.components or "any" in pattern.components
