from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStage(str, Enum):
    QUEUED = "queued"
    UNZIPPING = "unzipping"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


STAGE_ORDER = [
    JobStage.QUEUED,
    JobStage.UNZIPPING,
    JobStage.PROCESSING,
    JobStage.FINALIZING,
    JobStage.DONE,
]
TERMINAL_STAGES = {JobStage.DONE, JobStage.ERROR}


class ItemOutcome(str, Enum):
    UPLOADED = "uploaded"
    ALREADY_IMPORTED = "already_imported"
    MISSING_MEDIA = "missing_media"
    UPLOAD_FAILED = "upload_failed"


class ExtractedMetadata(BaseModel):
    subject: Optional[str] = None
    description: Optional[str] = None
    comment: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.subject or self.description or self.comment)


class MappedFields(CamelModel):
    caption: Optional[str] = None
    alternative_text: Optional[str] = None


class GeoPoint(BaseModel):
    lat: float
    lon: float


class ArchiveItem(CamelModel):
    relative_uri: str
    creation_timestamp: int
    title: str = ""
    gps: Optional[GeoPoint] = None
    # position inside a carousel entry
    sequence: int = 0


class CategoryDiscovery(BaseModel):
    key: str
    json_path: Path


class ItemResult(BaseModel):
    """Outcome of pushing one archive item through the upload pipeline."""
    outcome: ItemOutcome
    target_name: str
    media: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class CategoryStats(CamelModel):
    items: int = 0
    uploaded: int = 0
    earliest_ts: Optional[int] = None


class ImportStats(CamelModel):
    items_total: int = 0
    uploaded: int = 0
    already_imported: int = 0
    skipped_missing_media: int = 0
    upload_errors: int = 0
    invalid_items: int = 0
    by_category: Dict[str, CategoryStats] = Field(default_factory=dict)
    articles_created: int = 0
    articles_updated: int = 0
    posts_created: int = 0
    reels_created: int = 0
    usernames_touched: List[str] = Field(default_factory=list)

    def category(self, key: str) -> CategoryStats:
        if key not in self.by_category:
            self.by_category[key] = CategoryStats()
        return self.by_category[key]

    def touch_username(self, username: str) -> None:
        if username not in self.usernames_touched:
            self.usernames_touched.append(username)

    @property
    def items_handled(self) -> int:
        return (
            self.uploaded
            + self.already_imported
            + self.skipped_missing_media
            + self.upload_errors
        )


class ImportJob(CamelModel):
    id: str
    stage: JobStage = JobStage.QUEUED
    percent: int = 0
    stats: ImportStats = Field(default_factory=ImportStats)
    messages: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    done: bool = False
    started_at: datetime
    updated_at: datetime


class UploadResponse(CamelModel):
    ok: bool = True
    job_id: str


class MediaUploadResponse(CamelModel):
    ok: bool = True
    job_id: Optional[str] = None
    files: List[Dict[str, Any]] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    count: int
    republished: int
    failed: int
