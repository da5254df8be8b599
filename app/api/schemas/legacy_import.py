from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class Confidence(str, Enum):
    """Classifier confidence tiers, strongest first."""
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    Confidence.EXACT: 0,
    Confidence.HIGH: 1,
    Confidence.MEDIUM: 2,
    Confidence.NONE: 3,
}


class SessionStatus(str, Enum):
    UPLOADING = "uploading"
    ANALYZING = "analyzing"
    IMPORTING = "importing"
    DONE = "done"
    FAILED = "failed"


class ProgressStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class FileAnalysis(BaseModel):
    """Classifier output for one archive entry plus the reviewer's decision."""
    filename: str
    full_path: str
    row_count: int = 0
    headers: List[str] = Field(default_factory=list)
    sample_rows: List[List[str]] = Field(default_factory=list)
    suggested_target: Optional[str] = None
    confidence: Confidence = Confidence.NONE
    human_label: str = ""
    is_empty: bool = False
    auto_skip: bool = False
    skip_reason: Optional[str] = None
    dedup_field: Optional[str] = None
    requires_parent: Optional[str] = None
    accepted: bool = False
    override_target: Optional[str] = None

    @property
    def effective_target(self) -> Optional[str]:
        return self.override_target or self.suggested_target

    @model_validator(mode="after")
    def _accepted_needs_target(self) -> "FileAnalysis":
        if self.accepted and not self.effective_target:
            raise ValueError(f"File '{self.filename}' cannot be accepted without a target table")
        return self


class MappingEntry(BaseModel):
    """One confirmed file-to-table decision handed to the importer."""
    filename: str
    full_path: Optional[str] = None
    target_table: str


class RowError(BaseModel):
    row_index: int
    reason: str


class PostImportReport(BaseModel):
    step: str
    status: str  # done | skipped | failed
    rows: int = 0
    detail: Optional[str] = None


class ImportResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[RowError] = Field(default_factory=list)
    errors_truncated: int = 0
    post_import: List[PostImportReport] = Field(default_factory=list)

    def add_error(self, row_index: int, reason: str, limit: Optional[int] = None) -> None:
        """Append an error, counting instead of storing once ``limit`` entries exist."""
        if limit is not None and len(self.errors) >= limit:
            self.errors_truncated += 1
            return
        self.errors.append(RowError(row_index=row_index, reason=reason))

    @classmethod
    def failure(cls, reason: str) -> "ImportResult":
        return cls(errors=[RowError(row_index=-1, reason=reason)])


class ImportSession(BaseModel):
    id: str
    tenant_id: str
    archive_name: str
    storage_path: Optional[str] = None
    status: SessionStatus
    analysis: Optional[List[FileAnalysis]] = None
    confirmed_mapping: Optional[List[MappingEntry]] = None
    import_results: Optional[Dict[str, ImportResult]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProgressEntry(BaseModel):
    session_id: str
    filename: str
    target_table: str
    status: ProgressStatus
    result: Optional[ImportResult] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


# --------------------------------------------------------------------------- #
# Request / response bodies
# --------------------------------------------------------------------------- #


class FileDecisionRequest(BaseModel):
    accepted: bool
    override_target: Optional[str] = None


class ImportArchiveRequest(BaseModel):
    confirmed_mapping: Optional[List[MappingEntry]] = None


class ImportFileRequest(BaseModel):
    filename: str
    target_table: Optional[str] = None


class ImportSessionResponse(BaseModel):
    success: bool
    session: ImportSession


class AnalyzeArchiveResponse(BaseModel):
    success: bool
    session_id: str
    files: List[FileAnalysis]


class ImportArchiveResponse(BaseModel):
    success: bool
    session_id: str
    results: Dict[str, ImportResult]
    totals: Dict[str, Any] = Field(default_factory=dict)


class ProgressListResponse(BaseModel):
    success: bool
    session_id: str
    entries: List[ProgressEntry]
