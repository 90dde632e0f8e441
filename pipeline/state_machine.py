import copy
from typing import Callable, Dict, FrozenSet, Optional

from .errors import ForbiddenError, StateTransitionError, ValidationError
from .logger import get_logger
from .models import Actor, Role, SegmentStatus, TranslationUnit, utcnow
from .repository import UnitRepository

logger = get_logger(__name__)

S = SegmentStatus

TRANSITIONS: Dict[SegmentStatus, FrozenSet[SegmentStatus]] = {
    S.PENDING: frozenset({S.TRANSLATING}),
    S.TRANSLATING: frozenset({S.TRANSLATED, S.TRANSLATED_TM, S.ERROR}),
    S.ERROR: frozenset({S.TRANSLATING}),
    # Forced retranslation of TM hits goes back through TRANSLATING
    S.TRANSLATED_TM: frozenset({S.TRANSLATING, S.REVIEWING}),
    S.TRANSLATED: frozenset({S.REVIEWING}),
    S.REVIEWING: frozenset({S.REVIEW_PENDING, S.REVIEW_FAILED}),
    S.REVIEW_FAILED: frozenset({S.REVIEWING}),
    S.REVIEW_PENDING: frozenset({S.REVIEW_COMPLETED}),
    S.REVIEW_COMPLETED: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
}

Mutation = Callable[[TranslationUnit], None]


def can_transition(current: SegmentStatus, target: SegmentStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class SegmentStateMachine:
    """
    Single entry point for status changes.

    Every transition is checked against TRANSITIONS and the per-state guards
    before anything is written; the write itself is a revision-checked save,
    so two callers racing on the same unit cannot both win.
    """

    def __init__(self, repository: UnitRepository):
        self.repository = repository

    def transition(self, unit: TranslationUnit, target: SegmentStatus, *,
                   error: Optional[str] = None,
                   actor: Optional[Actor] = None,
                   override_open_issues: bool = False,
                   mutate: Optional[Mutation] = None) -> TranslationUnit:
        """
        Moves ``unit`` to ``target`` and persists it.

        ``mutate`` applies field changes that belong to the same step (e.g. the
        new translation) to the candidate before the guards run. The caller's
        object is never modified; on any error the stored unit is unchanged.
        """
        current = unit.status
        if not can_transition(current, target):
            raise StateTransitionError(current.value, target.value)

        candidate = copy.deepcopy(unit)
        if mutate is not None:
            mutate(candidate)

        self._apply_entry_rules(candidate, target, error, actor, override_open_issues)
        candidate.status = target
        saved = self.repository.save(candidate)
        logger.debug(f"Unit {saved.unit_id}: {current.value} -> {target.value}")
        return saved

    def update(self, unit: TranslationUnit, mutate: Mutation) -> TranslationUnit:
        """Persists field changes that leave the status where it is."""
        candidate = copy.deepcopy(unit)
        mutate(candidate)
        if candidate.status != unit.status:
            raise StateTransitionError(
                unit.status.value, candidate.status.value,
                "Status changes must go through transition()",
            )
        return self.repository.save(candidate)

    def _apply_entry_rules(self, unit: TranslationUnit, target: SegmentStatus, error: Optional[str],
                           actor: Optional[Actor], override_open_issues: bool) -> None:
        if target == S.TRANSLATING:
            unit.error = None
            unit.started_at = utcnow()
            unit.completed_at = None
        elif target in (S.ERROR, S.REVIEW_FAILED):
            if not error or not error.strip():
                raise ValidationError(f"Entering {target.value} requires an error message")
            unit.error = error
            unit.completed_at = utcnow()
        elif target in (S.TRANSLATED, S.TRANSLATED_TM):
            unit.error = None
            unit.completed_at = utcnow()
        elif target == S.REVIEWING:
            unit.error = None
        elif target == S.REVIEW_PENDING:
            if not unit.review and not unit.review_skipped:
                raise StateTransitionError(
                    unit.status.value, target.value,
                    f"Unit {unit.unit_id} has neither a suggested review nor a skip flag",
                )
        elif target == S.REVIEW_COMPLETED:
            if not unit.final_text:
                raise StateTransitionError(
                    unit.status.value, target.value,
                    f"Unit {unit.unit_id} cannot complete review without final text",
                )
        elif target == S.COMPLETED:
            self._check_finalize(unit, actor, override_open_issues)

    def _check_finalize(self, unit: TranslationUnit, actor: Optional[Actor], override_open_issues: bool):
        if actor is None or actor.role != Role.PROJECT_MANAGER:
            raise ForbiddenError("Only a project manager can finalize a segment")
        open_issues = unit.open_issues()
        if open_issues:
            if not override_open_issues:
                raise StateTransitionError(
                    unit.status.value, S.COMPLETED.value,
                    f"Unit {unit.unit_id} still has {len(open_issues)} open issue(s)",
                )
            warning = f"Finalized by {actor.user_id} with {len(open_issues)} unresolved issue(s)"
            unit.warnings.append(warning)
            logger.warning(f"Unit {unit.unit_id}: {warning}")
        unit.completed_at = utcnow()

