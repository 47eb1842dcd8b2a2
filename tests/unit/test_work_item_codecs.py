from __future__ import annotations

import json

import pytest

from intake.domain.errors import UnsupportedOperationError, WorkItemDecodeError
from intake.domain.models import Operation, Source, SubmissionRow, WorkItem, WorkItemKind
from intake.lib.work_items import decode_work_item, encode_work_item, parse_csv_rows, split_target_id


def _single() -> WorkItem:
    return WorkItem(
        item_id="wi-1",
        kind=WorkItemKind.SINGLE,
        rows=(
            SubmissionRow(
                submission_id="sub-1",
                operation=Operation.UPDATE,
                source=Source.API,
                data={"email": "a@example.com", "name": "Ada"},
                target_id="per-1",
            ),
        ),
        ip_address="10.0.0.1",
    )


@pytest.mark.unit
def test_work_item_survives_the_wire() -> None:
    item = _single()
    encoded = encode_work_item(item)

    assert json.loads(encoded)["schema_version"] == "work-item:v1"
    assert decode_work_item(encoded) == item


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b'{"item_id": "wi-1", "kind": "single", "rows": []}',
        b'{"item_id": "wi-1", "kind": "weird", "rows": [{"submission_id": "s", "operation": "create", "source": "api"}]}',
    ],
)
def test_malformed_payloads_are_rejected(payload: bytes) -> None:
    with pytest.raises(WorkItemDecodeError):
        decode_work_item(payload)


@pytest.mark.unit
def test_single_item_with_two_rows_is_malformed() -> None:
    body = json.loads(encode_work_item(_single()))
    body["rows"].append(dict(body["rows"][0], submission_id="sub-2"))

    with pytest.raises(WorkItemDecodeError, match="exactly one row"):
        decode_work_item(json.dumps(body).encode())


@pytest.mark.unit
def test_unknown_operation_is_unsupported() -> None:
    body = json.loads(encode_work_item(_single()))
    body["rows"][0]["operation"] = "upsert"

    with pytest.raises(UnsupportedOperationError, match="Unsupported operation 'upsert'"):
        decode_work_item(json.dumps(body).encode())


@pytest.mark.unit
def test_csv_rows_skip_blank_lines_and_ragged_rows() -> None:
    content = (
        "name,email,student_id\n"
        "Ada,ada@example.com,\n"
        "Bob,bob@example.com,per-7,extra\n"
        ",,\n"
        "Cy,cy@example.com,per-9\n"
    ).encode("utf-8")

    rows, skipped = parse_csv_rows(content)

    assert [row["name"] for row in rows] == ["Ada", "Cy"]
    assert rows[0]["student_id"] == ""
    assert len(skipped) == 1


@pytest.mark.unit
def test_split_target_id_pulls_reference_columns() -> None:
    data, target = split_target_id({"name": "Cy", "student_id": " per-9 ", "target_id": ""})

    assert target == "per-9"
    assert data == {"name": "Cy"}
    assert split_target_id({"name": "Ada"}) == ({"name": "Ada"}, None)
