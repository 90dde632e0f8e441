"""
Job dispatcher: turns file- or project-level job requests into per-unit
resolutions on a bounded worker pool, with whole-job retries.
"""
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .capabilities import ReviewCapability, TranslationCapability
from .errors import PipelineError, StateTransitionError, ValidationError
from .files import FileService
from .logger import get_logger
from .models import FileRecord, SegmentStatus, utcnow
from .options import JobRequest, ResolveOptions, ReviewOptions, parse_options
from .prompt_builder import PromptTemplate
from .resolver import TerminologyProvider, TranslationResolver
from .review import ReviewEngine
from .settings import QueueSettings
from .state_machine import SegmentStateMachine
from .tm_store import TranslationMemoryStore

logger = get_logger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    UNKNOWN = "unknown"


class CancelledError(Exception):
    """Raised inside a job when cancellation is observed."""


@dataclass
class JobReport:
    translated_tm: int = 0
    translated_ai: int = 0
    failed: int = 0
    skipped: int = 0
    reviewed: int = 0
    review_failed: int = 0
    cancelled: bool = False
    attempts: int = 0
    files: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class JobStatus:
    job_id: str
    status: JobState
    progress: int = 0
    failed_reason: Optional[str] = None
    return_value: Optional[JobReport] = None
    timestamp: Optional[datetime] = None
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None


@dataclass
class _Job:
    status: JobStatus
    request: JobRequest
    cancel_event: threading.Event = field(default_factory=threading.Event)


def _check_cancel(cancel_event: threading.Event) -> None:
    if cancel_event.is_set():
        raise CancelledError("Job cancelled")


class JobDispatcher:
    """
    Accepts job payloads and runs them on a job-level thread pool.

    Each job selects the units still needing work (PENDING and ERROR, plus
    TRANSLATED_TM when retranslation is forced) and resolves them on a
    bounded unit-level pool. A job that leaves failed units is retried with
    exponential backoff; only the failed units are picked up again.
    """

    def __init__(self, file_service: FileService, state_machine: SegmentStateMachine,
                 tm_store: TranslationMemoryStore,
                 capability_factory: Callable[[str], TranslationCapability],
                 template_lookup: Callable[[str], PromptTemplate],
                 queue_settings: Optional[QueueSettings] = None,
                 terminology_provider: Optional[TerminologyProvider] = None,
                 max_concurrent_jobs: int = 2):
        self.file_service = file_service
        self.state_machine = state_machine
        self.tm_store = tm_store
        self.capability_factory = capability_factory
        self.template_lookup = template_lookup
        self.queue_settings = queue_settings or QueueSettings()
        self.terminology_provider = terminology_provider
        self._jobs: Dict[str, _Job] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_jobs, thread_name_prefix="job")

    def submit(self, payload: Union[JobRequest, Dict[str, Any]]) -> str:
        request = payload if isinstance(payload, JobRequest) else parse_options(JobRequest, payload)
        job_id = uuid.uuid4().hex
        job = _Job(
            status=JobStatus(job_id=job_id, status=JobState.WAITING, timestamp=utcnow()),
            request=request,
        )
        with self._lock:
            self._jobs[job_id] = job
        self._executor.submit(self._run, job)
        logger.info(f"Job {job_id} queued ({request.type} job for project {request.project_id})")
        return job_id

    def get_status(self, job_id: str) -> JobStatus:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return JobStatus(job_id=job_id, status=JobState.UNKNOWN)
            return replace(job.status)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None or job.status.status in (JobState.COMPLETED, JobState.FAILED):
            return False
        job.cancel_event.set()
        logger.info(f"Job {job_id} cancellation requested")
        return True

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            with self._lock:
                jobs = list(self._jobs.values())
            for job in jobs:
                job.cancel_event.set()
        self._executor.shutdown(wait=wait)

    def _set(self, job: _Job, **changes) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(job.status, name, value)

    def _run(self, job: _Job) -> None:
        job_id = job.status.job_id
        request = job.request
        report = JobReport()
        self._set(job, status=JobState.ACTIVE, processed_on=utcnow())

        try:
            files = self._files_for(request)
            template = self.template_lookup(request.prompt_template_id)
            capability = self.capability_factory(request.ai_config_id)
            if request.options.auto_review and not isinstance(capability, ReviewCapability):
                raise ValidationError(f"AI configuration {request.ai_config_id} cannot review")
            resolver = TranslationResolver(self.state_machine, self.tm_store, capability,
                                           self.terminology_provider)
            review_engine = None
            if request.options.auto_review:
                review_engine = ReviewEngine(self.state_machine.repository, self.state_machine,
                                             capability, self.tm_store)

            attempts = self.queue_settings.attempts
            for attempt in range(1, attempts + 1):
                report.attempts = attempt
                self._set(job, status=JobState.ACTIVE)
                self._process(job, files, template, resolver, review_engine, report)
                if report.cancelled or report.failed == 0:
                    break
                if attempt < attempts:
                    delay = self.queue_settings.backoff_delay * (2 ** (attempt - 1))
                    logger.warning(f"Job {job_id}: {report.failed} unit(s) failed, retry {attempt + 1}/{attempts} in {delay:.1f}s")
                    self._set(job, status=JobState.DELAYED)
                    if job.cancel_event.wait(delay):
                        report.cancelled = True
                        break
        except PipelineError as e:
            logger.error(f"Job {job_id} failed: {e.message}")
            self._finish(job, report, failed_reason=e.message)
            return
        except Exception as e:
            logger.error(f"Job {job_id} crashed: {e}", exc_info=True)
            self._finish(job, report, failed_reason=f"Unexpected error: {e}")
            return

        if report.cancelled:
            self._finish(job, report, failed_reason="Job cancelled")
        elif report.failed > 0:
            reason = f"{report.failed} segment(s) failed after {report.attempts} attempt(s)"
            self._finish(job, report, failed_reason=reason)
        else:
            self._finish(job, report)

    def _finish(self, job: _Job, report: JobReport, failed_reason: Optional[str] = None) -> None:
        state = JobState.FAILED if failed_reason else JobState.COMPLETED
        self._set(job, status=state, failed_reason=failed_reason, return_value=report, finished_on=utcnow())
        logger.info(
            f"Job {job.status.job_id} {state.value}: {report.translated_tm} via TM, "
            f"{report.translated_ai} via AI, {report.failed} failed, {report.skipped} skipped"
        )

    def _files_for(self, request: JobRequest) -> List[FileRecord]:
        if request.type == "file":
            record = self.file_service.files.get(request.file_id)
            if record.project_id != request.project_id:
                raise ValidationError(f"File {record.file_id} does not belong to project {request.project_id}")
            files = [record]
        else:
            files = self.file_service.list_project_files(request.project_id)

        for record in files:
            source = request.options.source_language or record.metadata.source_language
            target = request.options.target_language or record.metadata.target_language
            if not source or not target:
                raise ValidationError(f"File {record.file_id} has no source/target language")
        return files

    def _process(self, job: _Job, files: List[FileRecord], template: PromptTemplate,
                 resolver: TranslationResolver, review_engine: Optional[ReviewEngine],
                 report: JobReport) -> None:
        request = job.request
        options = request.options
        wanted = [SegmentStatus.PENDING, SegmentStatus.ERROR]
        if options.retranslate_tm:
            wanted.append(SegmentStatus.TRANSLATED_TM)

        resolve_options = ResolveOptions(
            source_language=options.source_language,
            target_language=options.target_language,
            domain=options.domain or template.domain or None,
            retranslate_tm=options.retranslate_tm,
            temperature=options.temperature,
            **({"ai_model": options.ai_model} if options.ai_model else {}),
        )

        work = []
        for record in files:
            for unit in self.file_service.units.list_by_file(record.file_id, wanted):
                work.append((record, unit))
            self.file_service.mark_processing(record.file_id)

        total = len(work)
        done = 0
        # Failures describe the latest attempt only
        report.failed = 0
        report.errors = []
        if total == 0:
            self._set(job, progress=100)

        max_workers = self.queue_settings.max_workers
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="unit") as pool:
            futures = {
                pool.submit(self._resolve_one, job, record, unit, resolver, resolve_options,
                            template, review_engine): (record, unit)
                for record, unit in work
            }
            for future in as_completed(futures):
                record, unit = futures[future]
                try:
                    outcome, detail = future.result()
                except Exception as e:
                    logger.error(f"Unit {unit.unit_id} crashed: {e}", exc_info=True)
                    outcome, detail = "failed", f"Unexpected error: {e or type(e).__name__}"
                    self._release_unit(unit.unit_id, detail)
                self._count(report, outcome, unit.unit_id, detail)
                done += 1
                self.file_service.refresh_file_progress(record.file_id)
                self._set(job, progress=round(done / total * 100))

        for record in files:
            progress = self.file_service.refresh_file_progress(record.file_id, finished=True)
            report.files[record.file_id] = {
                "status": progress.status.value,
                "progress": progress.percentage,
                "translated": progress.translated,
                "failed": progress.failed,
                "error_details": progress.error_details,
            }

    def _resolve_one(self, job: _Job, record: FileRecord, unit, resolver: TranslationResolver,
                     options: ResolveOptions, template: PromptTemplate,
                     review_engine: Optional[ReviewEngine]) -> Tuple[str, Optional[str]]:
        try:
            _check_cancel(job.cancel_event)
        except CancelledError:
            return "cancelled", None

        try:
            result = resolver.resolve(
                unit, options,
                file_metadata=record.metadata,
                template=template,
                project_scope=record.project_id,
                cancel_event=job.cancel_event,
            )
        except StateTransitionError as e:
            # Picked up by someone else between selection and resolution
            logger.warning(f"Unit {unit.unit_id} skipped: {e.message}")
            return "skipped", e.message

        if result.status == SegmentStatus.TRANSLATED_TM:
            return "tm", None
        if result.status == SegmentStatus.ERROR:
            return "failed", result.error
        if result.status != SegmentStatus.TRANSLATED:
            return "cancelled", None

        if review_engine is not None and not job.cancel_event.is_set():
            reviewed = review_engine.start_review(
                result.unit_id,
                options.source_language or record.metadata.source_language,
                options.target_language or record.metadata.target_language,
                ReviewOptions(ai_model=options.ai_model, temperature=options.temperature),
            )
            if reviewed.status == SegmentStatus.REVIEW_PENDING:
                return "ai+reviewed", None
            return "ai+review_failed", reviewed.error
        return "ai", None

    def _count(self, report: JobReport, outcome: str, unit_id: str, detail: Optional[str]) -> None:
        if outcome == "tm":
            report.translated_tm += 1
        elif outcome.startswith("ai"):
            report.translated_ai += 1
            if outcome == "ai+reviewed":
                report.reviewed += 1
            elif outcome == "ai+review_failed":
                report.review_failed += 1
        elif outcome == "failed":
            report.failed += 1
            report.errors.append(f"Unit {unit_id}: {detail or 'failed'}")
        elif outcome == "skipped":
            report.skipped += 1
        elif outcome == "cancelled":
            report.cancelled = True

    def _release_unit(self, unit_id: str, message: str) -> None:
        """Moves a unit left in TRANSLATING by a crash to ERROR so a retry picks it up."""
        try:
            unit = self.state_machine.repository.get(unit_id)
            if unit.status == SegmentStatus.TRANSLATING:
                self.state_machine.transition(unit, SegmentStatus.ERROR, error=message)
        except PipelineError as e:
            logger.warning(f"Unit {unit_id} could not be released: {e.message}")
