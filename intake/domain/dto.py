from __future__ import annotations

from dataclasses import dataclass, field

from intake.domain.models import Source


@dataclass(frozen=True)
class SubmitRowCommand:
    operation: str
    data: dict[str, object]
    target_id: str | None = None


@dataclass(frozen=True)
class SubmitSingleCommand:
    source: Source
    row: SubmitRowCommand
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class SubmitBatchCommand:
    source: Source
    rows: tuple[SubmitRowCommand, ...]
    file_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class SubmitCsvCommand:
    content: bytes
    file_name: str
    operation: str = "create"
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class EnqueueResult:
    item_id: str
    job_id: str
    tube: str
    submission_ids: tuple[str, ...]
    skipped_rows: tuple[str, ...] = field(default_factory=tuple)
