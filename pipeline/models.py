from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SegmentStatus(str, Enum):
    PENDING = "pending"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    TRANSLATED_TM = "translated_tm"
    ERROR = "error"
    REVIEWING = "reviewing"
    REVIEW_PENDING = "review_pending"
    REVIEW_FAILED = "review_failed"
    REVIEW_COMPLETED = "review_completed"
    COMPLETED = "completed"


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueType(str, Enum):
    ACCURACY = "accuracy"
    FLUENCY = "fluency"
    TERMINOLOGY = "terminology"
    GRAMMAR = "grammar"
    STYLE = "style"
    CONSISTENCY = "consistency"
    FORMATTING = "formatting"
    OMISSION = "omission"
    ADDITION = "addition"
    OTHER = "other"


class ResolutionAction(str, Enum):
    ACCEPT = "accept"
    MODIFY = "modify"
    REJECT = "reject"


class ReviewScoreType(str, Enum):
    OVERALL = "overall"
    ACCURACY = "accuracy"
    FLUENCY = "fluency"
    TERMINOLOGY = "terminology"
    STYLE = "style"


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    TRANSLATED = "translated"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    ERROR = "error"


class Role(str, Enum):
    TRANSLATOR = "translator"
    REVIEWER = "reviewer"
    PROJECT_MANAGER = "project_manager"


OPEN_ISSUE_STATUSES = (IssueStatus.OPEN, IssueStatus.IN_PROGRESS)


@dataclass
class Actor:
    user_id: str
    role: Role = Role.TRANSLATOR


@dataclass
class IssuePosition:
    start: int
    end: int


@dataclass
class IssueResolution:
    action: str
    comment: str = ""
    modified_text: Optional[str] = None


@dataclass
class Issue:
    """
    One defect found in a translation.
    Resolution fields stay empty while the issue is open or in progress.
    """
    type: IssueType
    severity: IssueSeverity
    description: str
    position: Optional[IssuePosition] = None
    suggestion: Optional[str] = None
    status: IssueStatus = IssueStatus.OPEN
    resolution: Optional[IssueResolution] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_by: Optional[str] = None  # None for AI-raised issues
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ISSUE_STATUSES


@dataclass
class ReviewScore:
    type: ReviewScoreType
    score: float
    details: str = ""


@dataclass
class TokenCount:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class TranslationMetadata:
    ai_model: str = ""
    token_count: TokenCount = field(default_factory=TokenCount)
    processing_time: float = 0.0


@dataclass
class ReviewMetadata:
    ai_model: str = ""
    prompt_template_id: Optional[str] = None
    token_count: TokenCount = field(default_factory=TokenCount)
    processing_time: float = 0.0
    modification_degree: float = 0.0


@dataclass
class ReviewVersion:
    version: int
    content: str
    modified_by: Optional[str]
    ai_generated: bool = False
    accepted_by_human: bool = False
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class TranslationUnit:
    """
    Represents a single translatable span (trans-unit) of a bitext file,
    together with its pipeline lifecycle data.
    """
    file_id: str
    index: int
    external_id: str
    source_text: str  # Inner XML of <source>, inline tags kept verbatim
    translation: str = ""  # Current working translation (inner XML)
    final_text: Optional[str] = None  # Set only when a reviewer confirms

    status: SegmentStatus = SegmentStatus.PENDING
    error: Optional[str] = None

    issues: List[Issue] = field(default_factory=list)
    review: Optional[str] = None  # AI-suggested translation
    review_skipped: bool = False
    review_scores: List[ReviewScore] = field(default_factory=list)
    review_metadata: Optional[ReviewMetadata] = None
    review_history: List[ReviewVersion] = field(default_factory=list)
    translation_metadata: Optional[TranslationMetadata] = None
    quality_score: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    # Opaque to everything except the bitext codec
    format_metadata: Dict[str, Any] = field(default_factory=dict)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    revision: int = 0

    @property
    def unit_id(self) -> str:
        return f"{self.file_id}:{self.index}"

    @property
    def source_length(self) -> int:
        return len(self.source_text)

    @property
    def translated_length(self) -> int:
        return len(self.final_text if self.final_text is not None else self.translation)

    def open_issues(self) -> List[Issue]:
        return [issue for issue in self.issues if issue.is_open]


@dataclass
class FileMetadata:
    source_language: str = ""
    target_language: str = ""
    original_filename: str = ""
    datatype: str = ""
    dialect: str = "xliff"


@dataclass
class FileRecord:
    file_id: str
    project_id: str
    path: str
    filename: str
    metadata: FileMetadata = field(default_factory=FileMetadata)
    status: FileStatus = FileStatus.PENDING
    progress: int = 0
    translated_count: int = 0
    failed_count: int = 0
    error_details: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
