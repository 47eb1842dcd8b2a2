from __future__ import annotations

import io
import json

import pandas as pd
from pydantic import ValidationError

from intake.domain.errors import WorkItemDecodeError
from intake.domain.models import Operation, Source, SubmissionRow, WorkItem, WorkItemKind
from intake.lib.work_items.types import RowPayload, WorkItemPayload

SCHEMA_VERSION = "work-item:v1"
TARGET_COLUMNS = ("target_id", "student_id")


def encode_work_item(item: WorkItem) -> bytes:
    payload = WorkItemPayload(
        item_id=item.item_id,
        kind=item.kind.value,
        rows=[
            RowPayload(
                submission_id=row.submission_id,
                operation=row.operation.value,
                source=row.source.value,
                data=dict(row.data),
                target_id=row.target_id,
                csv_row=row.csv_row,
            )
            for row in item.rows
        ],
        file_name=item.file_name,
        total_rows=item.total_rows,
        ip_address=item.ip_address,
        user_agent=item.user_agent,
    )
    return json.dumps(payload.model_dump(mode="json"), sort_keys=True).encode("utf-8")


def decode_work_item(payload: bytes) -> WorkItem:
    """Parse queue bytes into a WorkItem.

    Raises WorkItemDecodeError for malformed payloads and
    UnsupportedOperationError when a row names an unknown operation.
    """
    try:
        parsed = WorkItemPayload.model_validate_json(payload)
    except ValidationError as exc:
        raise WorkItemDecodeError(f"malformed work item: {exc.error_count()} schema error(s)") from exc
    if parsed.schema_version != SCHEMA_VERSION:
        raise WorkItemDecodeError(f"unsupported work item schema: {parsed.schema_version}")

    rows = tuple(
        SubmissionRow(
            submission_id=row.submission_id,
            operation=Operation.parse(row.operation),
            source=Source(row.source),
            data=dict(row.data),
            target_id=row.target_id,
            csv_row=row.csv_row,
        )
        for row in parsed.rows
    )
    kind = WorkItemKind(parsed.kind)
    if kind == WorkItemKind.SINGLE and len(rows) != 1:
        raise WorkItemDecodeError("single work item must carry exactly one row")
    return WorkItem(
        item_id=parsed.item_id,
        kind=kind,
        rows=rows,
        file_name=parsed.file_name,
        total_rows=parsed.total_rows,
        ip_address=parsed.ip_address,
        user_agent=parsed.user_agent,
    )


def parse_csv_rows(content: bytes) -> tuple[list[dict[str, str]], list[str]]:
    """Split CSV upload content into header-keyed rows.

    Returns (rows, skipped) where skipped describes lines dropped because
    their column count did not match the header.
    """
    skipped: list[str] = []

    def _on_bad_line(fields: list[str]) -> None:
        skipped.append(f"row has {len(fields)} columns, skipping")
        return None

    frame = pd.read_csv(
        io.BytesIO(content),
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        engine="python",
        on_bad_lines=_on_bad_line,
    )
    frame.columns = [str(column).strip() for column in frame.columns]

    rows: list[dict[str, str]] = []
    for record in frame.to_dict(orient="records"):
        values = {str(key): "" if pd.isna(value) else str(value) for key, value in record.items()}
        if not any(value.strip() for value in values.values()):
            continue
        rows.append(values)
    return rows, skipped


def split_target_id(data: dict[str, object]) -> tuple[dict[str, object], str | None]:
    """Pull the record reference out of a raw row, if the row names one."""
    remaining = dict(data)
    target_id: str | None = None
    for column in TARGET_COLUMNS:
        value = remaining.pop(column, None)
        if target_id is None and isinstance(value, str) and value.strip():
            target_id = value.strip()
    return remaining, target_id
