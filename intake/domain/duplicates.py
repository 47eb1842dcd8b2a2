from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal

from intake.domain.contracts import RecordStore
from intake.domain.errors import DuplicateRecordError
from intake.domain.models import Operation, SubmissionRow
from intake.domain.validation import normalize_email

DuplicateScope = Literal["store", "batch"]


@dataclass(frozen=True)
class DuplicateReference:
    email: str
    scope: DuplicateScope
    submission_id: str | None = None
    person_id: str | None = None
    csv_row: int | None = None

    @property
    def reference_id(self) -> str:
        return self.submission_id or self.person_id or ""

    def describe(self) -> str:
        if self.scope == "batch":
            row = f" (row {self.csv_row})" if self.csv_row is not None else ""
            return (
                f"Duplicate email: '{self.email}' already exists earlier in this upload{row} "
                f"(ID: {self.reference_id})"
            )
        return f"Duplicate email: A form submission with email '{self.email}' already exists (ID: {self.reference_id})"

    def to_error(self) -> DuplicateRecordError:
        return DuplicateRecordError(self.describe(), duplicate_of=self.reference_id)


@dataclass(frozen=True)
class _FirstOccurrence:
    submission_id: str
    csv_row: int | None


@dataclass(frozen=True)
class BatchScope:
    """First create row per email inside one work item, fixed by input order.

    Built once before any row runs, so the verdict for a later row does not
    depend on whether the earlier row has been processed yet.
    """

    first_rows: Mapping[str, _FirstOccurrence] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[SubmissionRow]) -> BatchScope:
        first_rows: dict[str, _FirstOccurrence] = {}
        for row in rows:
            if row.operation != Operation.CREATE:
                continue
            email = row.data.get("email")
            if not isinstance(email, str) or not email.strip():
                continue
            first_rows.setdefault(
                normalize_email(email),
                _FirstOccurrence(submission_id=row.submission_id, csv_row=row.csv_row),
            )
        return cls(first_rows=first_rows)

    def earlier_occurrence(self, email: str, *, submission_id: str) -> DuplicateReference | None:
        normalized = normalize_email(email)
        first = self.first_rows.get(normalized)
        if first is None or first.submission_id == submission_id:
            return None
        return DuplicateReference(
            email=normalized,
            scope="batch",
            submission_id=first.submission_id,
            csv_row=first.csv_row,
        )


EMPTY_BATCH_SCOPE = BatchScope()


@dataclass(frozen=True)
class DuplicateDetector:
    store: RecordStore

    async def find_duplicate(
        self,
        email: str,
        *,
        submission_id: str,
        batch: BatchScope = EMPTY_BATCH_SCOPE,
    ) -> DuplicateReference | None:
        """Return the record that already owns this email, if any.

        Sibling rows earlier in the same batch win first; after that a live
        person created by a completed submission is reported by submission
        id, and a person with no surviving submission by person id.
        """
        in_batch = batch.earlier_occurrence(email, submission_id=submission_id)
        if in_batch is not None:
            return in_batch

        normalized = normalize_email(email)
        completed = await self.store.find_completed_creates_by_email(
            email=normalized,
            exclude_submission_id=submission_id,
        )
        for submission in completed:
            if submission.person_id is None:
                continue
            person = await self.store.get_person(person_id=submission.person_id)
            if person is not None:
                return DuplicateReference(
                    email=normalized,
                    scope="store",
                    submission_id=submission.submission_id,
                    person_id=person.person_id,
                )

        person = await self.store.find_person_by_email(email=normalized)
        if person is not None and person.submission_id != submission_id:
            return DuplicateReference(
                email=normalized,
                scope="store",
                submission_id=person.submission_id,
                person_id=person.person_id,
            )
        return None
