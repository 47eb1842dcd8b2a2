from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from intake.domain.contracts import RecordStore
from intake.domain.models import Operation, Source

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATE_FORMAT = "%Y-%m-%d"
GENDERS = ("male", "female")
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 14

REQUIRED_MESSAGES: dict[str, str] = {
    "name": "Student name is required.",
    "email": "Student email is required.",
    "gender": "Gender selection is required.",
    "phone": "Phone number is required for CSV uploads.",
    "date_of_birth": "Date of birth is required for CSV uploads.",
    "course": "Course is required for CSV uploads.",
    "enrollment_date": "Enrollment date is required for CSV uploads.",
}

FIELD_LABELS: dict[str, str] = {
    "name": "Student name",
    "email": "Email",
    "course": "Course",
    "grade": "Grade",
    "profile_image_path": "Profile image path",
    "address": "Address",
}


class StudentPayload(BaseModel):
    """Field rules for form and api submissions."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    name: str
    email: str
    phone: str | None = None
    gender: str
    date_of_birth: str | None = None
    course: str | None = None
    enrollment_date: str | None = None
    grade: str | None = None
    profile_image_path: str | None = None
    address: str | None = None

    @field_validator("name", "course")
    @classmethod
    def _max_255(cls, value: str | None, info) -> str | None:
        return _max_length(value, info.field_name, 255)

    @field_validator("grade")
    @classmethod
    def _max_10(cls, value: str | None, info) -> str | None:
        return _max_length(value, info.field_name, 10)

    @field_validator("profile_image_path")
    @classmethod
    def _max_500(cls, value: str | None, info) -> str | None:
        return _max_length(value, info.field_name, 500)

    @field_validator("address")
    @classmethod
    def _max_1000(cls, value: str | None, info) -> str | None:
        return _max_length(value, info.field_name, 1000)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        if len(value) > 255 or not EMAIL_PATTERN.match(value):
            raise PydanticCustomError("email_format", "Please provide a valid email address.")
        return value

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if not value.isdigit():
            raise PydanticCustomError("phone_digits", "Phone number must contain only digits.")
        if len(value) < PHONE_MIN_DIGITS:
            raise PydanticCustomError("phone_min", "Phone number must be at least 10 digits.")
        if len(value) > PHONE_MAX_DIGITS:
            raise PydanticCustomError("phone_max", "Phone number must not exceed 14 digits.")
        return value

    @field_validator("gender")
    @classmethod
    def _gender(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in GENDERS:
            raise PydanticCustomError("gender_choice", "Gender must be either male or female.")
        return normalized

    @field_validator("date_of_birth")
    @classmethod
    def _date_of_birth(cls, value: str | None) -> str | None:
        return _calendar_date(value, "Date of birth")

    @field_validator("enrollment_date")
    @classmethod
    def _enrollment_date(cls, value: str | None) -> str | None:
        return _calendar_date(value, "Enrollment date")


class CsvStudentPayload(StudentPayload):
    """CSV rows carry the full student profile."""

    phone: str
    date_of_birth: str
    course: str
    enrollment_date: str


@dataclass(frozen=True)
class FieldError:
    field: str
    reason: str


@dataclass(frozen=True)
class ValidatedPayload:
    data: dict[str, object]

    @property
    def email(self) -> str | None:
        value = self.data.get("email")
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class ValidationFailure:
    errors: tuple[FieldError, ...]

    def message(self) -> str:
        return "Validation failed: " + "; ".join(error.reason for error in self.errors)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def prune_payload(raw: dict[str, object]) -> dict[str, object]:
    """Trim strings and drop blank fields, keeping input order."""
    pruned: dict[str, object] = {}
    for key, value in raw.items():
        if isinstance(value, str):
            value = value.strip()
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if value is None or value == "":
            continue
        pruned[str(key)] = value
    return pruned


def validate_payload(
    raw: dict[str, object],
    operation: Operation,
    *,
    source: Source,
    target_id: str | None = None,
) -> ValidatedPayload | ValidationFailure:
    match operation:
        case Operation.DELETE:
            if not target_id:
                return ValidationFailure(
                    errors=(FieldError(field="target_id", reason="A record id is required for deletion."),)
                )
            return ValidatedPayload(data=prune_payload(raw))
        case Operation.CREATE | Operation.UPDATE:
            schema = CsvStudentPayload if source == Source.CSV else StudentPayload
            try:
                parsed = schema.model_validate(prune_payload(raw))
            except ValidationError as exc:
                return ValidationFailure(errors=tuple(_field_errors(exc)))
            return ValidatedPayload(data=parsed.model_dump(exclude_none=True))


async def check_identity_available(
    store: RecordStore,
    *,
    email: str,
    ignore_identity: str | None,
) -> FieldError | None:
    """Reject an update that would move an email onto a second person."""
    owner = await store.find_person_by_email(email=normalize_email(email))
    if owner is None or owner.person_id == ignore_identity:
        return None
    return FieldError(field="email", reason="This email address is already registered to another record.")


def _field_errors(exc: ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for error in exc.errors(include_url=False):
        field = str(error["loc"][0]) if error["loc"] else "payload"
        if error["type"] == "missing":
            reason = REQUIRED_MESSAGES.get(field, f"{field} is required.")
        elif error["type"] == "string_type":
            reason = f"{FIELD_LABELS.get(field, field)} must be text."
        else:
            reason = str(error["msg"])
        errors.append(FieldError(field=field, reason=reason))
    return errors


def _max_length(value: str | None, field: str | None, limit: int) -> str | None:
    if value is not None and len(value) > limit:
        label = FIELD_LABELS.get(field or "", field or "value")
        raise PydanticCustomError("too_long", "{label} must not exceed {limit} characters.", {"label": label, "limit": limit})
    return value


def _calendar_date(value: str | None, label: str) -> str | None:
    if value is None:
        return None
    if not DATE_PATTERN.match(value):
        raise PydanticCustomError("date_format", "{label} must be in YYYY-MM-DD format.", {"label": label})
    try:
        datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        raise PydanticCustomError("date_invalid", "{label} must be a valid date.", {"label": label}) from None
    return value
