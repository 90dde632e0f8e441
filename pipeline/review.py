"""
Review and scoring engine.

Flow for one unit:
    start_review    TRANSLATED / REVIEW_FAILED -> REVIEWING -> REVIEW_PENDING | REVIEW_FAILED
    skip_review     TRANSLATED / TRANSLATED_TM -> REVIEWING -> REVIEW_PENDING (no AI call)
    resolve_issue   resolution of one issue, status unchanged
    complete_review REVIEW_PENDING -> REVIEW_COMPLETED (reviewer confirms final text)
    finalize        REVIEW_COMPLETED -> COMPLETED (project manager, computes quality score)
"""
import dataclasses
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .capabilities import ReviewCapability, ReviewRequest
from .errors import CapabilityError, ForbiddenError, NotFoundError, StateTransitionError, ValidationError
from .files import FileService
from .logger import get_logger
from .models import (
    Actor, Issue, IssuePosition, IssueResolution, IssueSeverity, IssueStatus, IssueType,
    ResolutionAction, ReviewMetadata, ReviewScore, ReviewScoreType, ReviewVersion, Role,
    SegmentStatus, TokenCount, TranslationUnit, utcnow,
)
from .options import ReviewOptions
from .repository import UnitRepository
from .similarity import calculate_modification_degree
from .state_machine import SegmentStateMachine
from .tm_store import TranslationMemoryStore

logger = get_logger(__name__)

BASE_SCORE = 100

REJECTED_PENALTY = {
    IssueSeverity.HIGH: 10,
    IssueSeverity.MEDIUM: 3,
    IssueSeverity.LOW: 1,
}

RESOLVED_PENALTY = {
    IssueSeverity.HIGH: 5,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.LOW: 1,
}

REVIEWER_ROLES = (Role.REVIEWER, Role.PROJECT_MANAGER)
ISSUE_EDITABLE_STATUSES = (SegmentStatus.REVIEW_PENDING, SegmentStatus.REVIEW_COMPLETED)


def calculate_quality_score(issues: Iterable[Issue]) -> Tuple[int, List[str]]:
    """
    Deterministic 0-100 score from issue severities and outcomes.

    Rejected issues cost the full penalty, resolved ones the reduced one.
    Issues still open count as rejected; each produces a warning.
    """
    score = BASE_SCORE
    warnings = []
    for position, issue in enumerate(issues):
        if issue.status == IssueStatus.RESOLVED:
            score -= RESOLVED_PENALTY[issue.severity]
            continue
        if issue.status != IssueStatus.REJECTED:
            warnings.append(f"Issue {position} is still {issue.status.value}; penalized as rejected")
        score -= REJECTED_PENALTY[issue.severity]
    return max(0, score), warnings


def _enum_or_default(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def normalize_issue(raw: Dict[str, Any]) -> Issue:
    """Turns one provider issue dict into an open Issue."""
    severity = _enum_or_default(IssueSeverity, raw.get("severity", ""), IssueSeverity.MEDIUM)
    issue_type = _enum_or_default(IssueType, raw.get("type", ""), IssueType.OTHER)
    position = None
    raw_position = raw.get("position")
    if isinstance(raw_position, dict):
        try:
            position = IssuePosition(start=int(raw_position["start"]), end=int(raw_position["end"]))
        except (KeyError, TypeError, ValueError):
            position = None
    return Issue(
        type=issue_type,
        severity=severity,
        description=str(raw.get("description") or ""),
        position=position,
        suggestion=raw.get("suggestion") or None,
    )


def normalize_scores(raw_scores: Iterable[Dict[str, Any]]) -> List[ReviewScore]:
    scores = []
    for raw in raw_scores:
        score_type = _enum_or_default(ReviewScoreType, raw.get("type", ""), None)
        if score_type is None:
            continue
        try:
            value = float(raw.get("score", 0))
        except (TypeError, ValueError):
            continue
        scores.append(ReviewScore(type=score_type, score=value, details=str(raw.get("details") or "")))
    return scores


class ReviewEngine:
    def __init__(self, repository: UnitRepository, state_machine: SegmentStateMachine,
                 reviewer: ReviewCapability, tm_store: Optional[TranslationMemoryStore] = None,
                 file_service: Optional[FileService] = None):
        self.repository = repository
        self.state_machine = state_machine
        self.reviewer = reviewer
        self.tm_store = tm_store
        self.file_service = file_service

    def start_review(self, unit_id: str, source_language: str, target_language: str,
                     options: Optional[ReviewOptions] = None) -> TranslationUnit:
        options = options or ReviewOptions()
        unit = self.repository.get(unit_id)
        if unit.status not in (SegmentStatus.TRANSLATED, SegmentStatus.REVIEW_FAILED):
            raise StateTransitionError(
                unit.status.value, SegmentStatus.REVIEWING.value,
                f"Unit {unit_id} must be translated before AI review",
            )

        unit = self.state_machine.transition(unit, SegmentStatus.REVIEWING)
        request = ReviewRequest(
            original_content=unit.source_text,
            translated_content=unit.translation,
            source_language=source_language,
            target_language=target_language,
            model=options.ai_model,
            custom_prompt=options.custom_prompt,
            context_segments=self._context_segments(unit, options.context_window),
            temperature=options.temperature,
        )

        started = time.monotonic()
        try:
            response = self.reviewer.review(request)
        except CapabilityError as e:
            logger.error(f"Unit {unit_id}: AI review failed: {e.message}")
            return self.state_machine.transition(unit, SegmentStatus.REVIEW_FAILED, error=e.message or "Review failed")
        except Exception as e:
            logger.error(f"Unit {unit_id}: unexpected AI review error: {e}", exc_info=True)
            return self.state_machine.transition(
                unit, SegmentStatus.REVIEW_FAILED, error=f"Unexpected error: {e or type(e).__name__}",
            )

        suggested = response.suggested_translation or unit.translation
        tokens = response.metadata.get("tokens") or {}

        def apply(u: TranslationUnit):
            u.issues = [normalize_issue(raw) for raw in response.issues]
            u.review = suggested
            u.review_scores = normalize_scores(response.scores)
            u.review_metadata = ReviewMetadata(
                ai_model=response.metadata.get("model") or options.ai_model,
                prompt_template_id=options.prompt_template_id,
                token_count=TokenCount(
                    input=int(tokens.get("input", 0)),
                    output=int(tokens.get("output", 0)),
                    total=int(tokens.get("total", 0)),
                ),
                processing_time=response.metadata.get("processing_time", time.monotonic() - started),
                modification_degree=calculate_modification_degree(u.translation, suggested),
            )
            u.review_history.append(ReviewVersion(
                version=len(u.review_history) + 1,
                content=suggested,
                modified_by=None,
                ai_generated=True,
            ))

        reviewed = self.state_machine.transition(unit, SegmentStatus.REVIEW_PENDING, mutate=apply)
        logger.info(f"Unit {unit_id}: AI review found {len(reviewed.issues)} issue(s)")
        return reviewed

    def skip_review(self, unit_id: str, actor: Actor) -> TranslationUnit:
        """Moves a unit to REVIEW_PENDING without an AI pass."""
        unit = self.repository.get(unit_id)
        unit = self.state_machine.transition(unit, SegmentStatus.REVIEWING)

        def mark(u: TranslationUnit):
            u.review_skipped = True
            u.review = u.translation

        logger.info(f"Unit {unit_id}: AI review skipped by {actor.user_id}")
        return self.state_machine.transition(unit, SegmentStatus.REVIEW_PENDING, mutate=mark)

    def add_issue(self, unit_id: str, issue: Issue, actor: Actor) -> TranslationUnit:
        unit = self.repository.get(unit_id)
        if unit.status != SegmentStatus.REVIEW_PENDING:
            raise StateTransitionError(unit.status.value, unit.status.value,
                                       f"Issues can only be added to units awaiting review (unit is {unit.status.value})")
        if not issue.description:
            raise ValidationError("Issue description is required")

        raised = dataclasses.replace(issue, status=IssueStatus.OPEN, resolution=None,
                                     resolved_by=None, resolved_at=None, created_by=actor.user_id)

        def append(u: TranslationUnit):
            u.issues.append(raised)

        return self.state_machine.update(unit, append)

    def start_issue(self, unit_id: str, issue_index: int, actor: Actor,
                    expected_revision: Optional[int] = None) -> TranslationUnit:
        unit = self._load_for_issue(unit_id, expected_revision)
        issue = self._issue_at(unit, issue_index)
        if issue.status != IssueStatus.OPEN:
            raise StateTransitionError(issue.status.value, IssueStatus.IN_PROGRESS.value)

        def mark(u: TranslationUnit):
            u.issues[issue_index].status = IssueStatus.IN_PROGRESS

        logger.debug(f"Unit {unit_id}: issue {issue_index} picked up by {actor.user_id}")
        return self.state_machine.update(unit, mark)

    def resolve_issue(self, unit_id: str, issue_index: int, resolution: IssueResolution,
                      actor: Actor, expected_revision: Optional[int] = None) -> TranslationUnit:
        """
        Records a resolution. accept/modify resolve the issue, reject rejects it;
        an unknown action is treated as resolved and logged.
        """
        unit = self._load_for_issue(unit_id, expected_revision)
        issue = self._issue_at(unit, issue_index)
        if not issue.is_open:
            raise StateTransitionError(
                issue.status.value, "resolved",
                f"Issue {issue_index} of unit {unit_id} is already {issue.status.value}",
            )

        action = _enum_or_default(ResolutionAction, resolution.action, None)
        if action is None:
            logger.warning(f"Unit {unit_id}: unknown resolution action '{resolution.action}', treating as resolved")
            new_status = IssueStatus.RESOLVED
        elif action == ResolutionAction.REJECT:
            new_status = IssueStatus.REJECTED
        else:
            new_status = IssueStatus.RESOLVED

        def apply(u: TranslationUnit):
            target = u.issues[issue_index]
            target.status = new_status
            target.resolution = resolution
            target.resolved_by = actor.user_id
            target.resolved_at = utcnow()

        updated = self.state_machine.update(unit, apply)
        logger.info(f"Unit {unit_id}: issue {issue_index} {new_status.value} by {actor.user_id}")
        return updated

    def complete_review(self, unit_id: str, final_text: str, actor: Actor,
                        accepted_changes: Optional[bool] = None,
                        source_language: Optional[str] = None,
                        target_language: Optional[str] = None,
                        project_scope: Optional[str] = None) -> TranslationUnit:
        """
        Reviewer confirms the final text. The confirmed pair feeds the TM when
        languages are known.
        """
        if actor.role not in REVIEWER_ROLES:
            raise ForbiddenError(f"User {actor.user_id} may not complete reviews")
        if not final_text or not final_text.strip():
            raise ValidationError("Final text is required to complete a review")

        unit = self.repository.get(unit_id)
        previous = unit.translation

        def apply(u: TranslationUnit):
            u.final_text = final_text
            u.translation = final_text
            metadata = u.review_metadata or ReviewMetadata()
            metadata.modification_degree = calculate_modification_degree(previous, final_text)
            u.review_metadata = metadata
            u.review_history.append(ReviewVersion(
                version=len(u.review_history) + 1,
                content=final_text,
                modified_by=actor.user_id,
                accepted_by_human=True if accepted_changes is None else accepted_changes,
            ))

        completed = self.state_machine.transition(unit, SegmentStatus.REVIEW_COMPLETED, mutate=apply)

        if self.tm_store is not None and source_language and target_language:
            self.tm_store.add_entry(completed.source_text, final_text, source_language, target_language,
                                    project_scope=project_scope, created_by=actor.user_id)
        logger.info(f"Unit {unit_id}: review completed by {actor.user_id}")
        return completed

    def finalize(self, unit_id: str, actor: Actor, override_open_issues: bool = False) -> TranslationUnit:
        unit = self.repository.get(unit_id)
        if unit.status != SegmentStatus.REVIEW_COMPLETED:
            raise StateTransitionError(unit.status.value, SegmentStatus.COMPLETED.value,
                                       f"Unit {unit_id} review is not completed")

        score, warnings = calculate_quality_score(unit.issues)
        for warning in warnings:
            logger.warning(f"Unit {unit_id}: {warning}")

        def apply(u: TranslationUnit):
            u.quality_score = score
            u.warnings.extend(warnings)

        finalized = self.state_machine.transition(
            unit, SegmentStatus.COMPLETED, actor=actor,
            override_open_issues=override_open_issues, mutate=apply,
        )
        logger.info(f"Unit {unit_id}: finalized by {actor.user_id} with quality score {score}")
        if self.file_service is not None:
            self.file_service.mark_file_completed_if_done(finalized.file_id)
        return finalized

    def _load_for_issue(self, unit_id: str, expected_revision: Optional[int]) -> TranslationUnit:
        unit = self.repository.get(unit_id)
        if unit.status not in ISSUE_EDITABLE_STATUSES:
            raise StateTransitionError(unit.status.value, unit.status.value,
                                       f"Issues of unit {unit_id} cannot be changed while {unit.status.value}")
        if expected_revision is not None:
            # save() rejects the write when this revision is stale
            unit.revision = expected_revision
        return unit

    @staticmethod
    def _issue_at(unit: TranslationUnit, issue_index: int) -> Issue:
        if not isinstance(issue_index, int) or isinstance(issue_index, bool) or issue_index < 0:
            raise ValidationError(f"Invalid issue index {issue_index!r}")
        if issue_index >= len(unit.issues):
            raise NotFoundError(f"Unit {unit.unit_id} has no issue {issue_index}")
        return unit.issues[issue_index]

    def _context_segments(self, unit: TranslationUnit, window: int) -> List[Dict[str, str]]:
        if window <= 0:
            return []
        neighbours = self.repository.list_by_file(unit.file_id)
        return [
            {"original": n.source_text, "translation": n.translation}
            for n in neighbours
            if n.index != unit.index and abs(n.index - unit.index) <= window and n.translation
        ]
