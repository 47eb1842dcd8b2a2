from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

# v1 wire contract for work items placed on the queue.
# These schemas only describe payload shape; operations are parsed into the
# closed Operation enum when the payload is turned back into a WorkItem.


class RowPayload(BaseModel):
    # Pre-assigned so that redelivery maps back to the same submission record.
    submission_id: str = Field(min_length=1)
    operation: str
    source: Literal["form", "api", "csv"]
    data: dict[str, object] = Field(default_factory=dict)
    target_id: str | None = None
    # 1-based row index, only for csv batch rows.
    csv_row: int | None = Field(default=None, ge=1)


class WorkItemPayload(BaseModel):
    item_id: str = Field(min_length=1)
    kind: Literal["single", "batch"]
    rows: list[RowPayload] = Field(min_length=1)
    file_name: str | None = None
    total_rows: int | None = Field(default=None, ge=0)
    ip_address: str | None = None
    user_agent: str | None = None
    schema_version: str = Field(default="work-item:v1")


class MirrorEventPayload(BaseModel):
    # Compact event forwarded to the external mirror sink.
    event: Literal["submission.processed", "submission.duplicate", "batch.completed"]
    submission_id: str | None = None
    operation: str | None = None
    source: str | None = None
    status: str | None = None
    person_id: str | None = None
    email: str | None = None
    error: str | None = None
    data: dict[str, object] = Field(default_factory=dict)
    occurred_at: str
