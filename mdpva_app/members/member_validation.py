import datetime
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from django.utils import timezone

from members.csv_import_utils import (
    MEMBER_REQUIRED_FIELDS,
    is_dob_format,
    normalize_csv_email,
    normalize_csv_phone,
    parse_csv_dob,
)
from members.models import Member
from members.views_utils import _normalize_str

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")
_PHONE_PATTERN = re.compile(r"^[+\d][\d\s()-]{6,}$")
_PINCODE_PATTERN = re.compile(r"^\d{6}$")

_PROFESSIONS: frozenset[str] = frozenset(Member.Profession.values)
_STATUSES: frozenset[str] = frozenset(Member.Status.values)
_BLOOD_GROUPS: frozenset[str] = frozenset(Member.BloodGroup.values)


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_PATTERN.match(normalize_csv_email(value)))


def is_valid_phone(value: str) -> bool:
    # The raw value is checked; normalization happens afterwards.
    return bool(_PHONE_PATTERN.match(_normalize_str(value)))


def is_valid_pincode(value: str) -> bool:
    return bool(_PINCODE_PATTERN.match(_normalize_str(value)))


def validate_member_record(record: Mapping[str, str], *, today: datetime.date | None = None) -> list[str]:
    """Return every issue found in one mapped row; an empty list means the row is valid.

    Rules are independent: a row with a bad email and a bad pincode reports both.
    """
    issues: list[str] = []

    for field_name in MEMBER_REQUIRED_FIELDS:
        if not _normalize_str(record.get(field_name)):
            issues.append(f"Missing required: {field_name}")

    email = _normalize_str(record.get("email"))
    if email and not is_valid_email(email):
        issues.append("Invalid email")

    phone = _normalize_str(record.get("phone"))
    if phone and not is_valid_phone(phone):
        issues.append("Invalid phone")

    profession = _normalize_str(record.get("profession")).lower()
    if profession and profession not in _PROFESSIONS:
        issues.append("Invalid profession")

    status = _normalize_str(record.get("status")).lower()
    if status and status not in _STATUSES:
        issues.append("Invalid status")

    pincode = _normalize_str(record.get("pincode"))
    if pincode and not is_valid_pincode(pincode):
        issues.append("Invalid pincode")

    blood_group = _normalize_str(record.get("blood_group")).upper()
    if blood_group and blood_group not in _BLOOD_GROUPS:
        issues.append("Invalid blood group")

    dob = _normalize_str(record.get("dob"))
    if dob:
        parsed = parse_csv_dob(dob) if is_dob_format(dob) else None
        if parsed is None:
            issues.append("Invalid DOB format (dd/mm/yyyy)")
        else:
            reference = today if today is not None else timezone.localdate()
            if parsed > reference:
                issues.append("DOB cannot be in the future")

    return issues


@dataclass
class BatchValidator:
    """Accumulates per-row issues plus within-file duplicate contacts."""

    today: datetime.date | None = None
    emails: set[str] = field(default_factory=set)
    phones: set[str] = field(default_factory=set)
    duplicate_emails: set[str] = field(default_factory=set)
    duplicate_phones: set[str] = field(default_factory=set)

    def check(self, record: Mapping[str, str]) -> list[str]:
        issues = validate_member_record(record, today=self.today)

        email = normalize_csv_email(record.get("email"))
        if email:
            if email in self.emails:
                self.duplicate_emails.add(email)
            self.emails.add(email)

        phone = normalize_csv_phone(record.get("phone"))
        if phone:
            if phone in self.phones:
                self.duplicate_phones.add(phone)
            self.phones.add(phone)

        return issues

    @property
    def duplicate_within_file(self) -> int:
        return len(self.duplicate_emails) + len(self.duplicate_phones)


@dataclass(frozen=True)
class RowIssues:
    row: int
    issues: tuple[str, ...]

    def as_dict(self) -> dict[str, object]:
        return {"row": self.row, "issues": list(self.issues)}


@dataclass
class ValidationReport:
    total: int
    valid: int
    invalid: int
    duplicate_within_file: int
    errors: list[RowIssues]
    emails: set[str]
    phones: set[str]


def data_row_number(index: int) -> int:
    """File line of a data row: index 0 is the first line after the header."""
    return index + 2


def validate_member_rows(
    records: Iterable[Mapping[str, str]],
    *,
    today: datetime.date | None = None,
) -> ValidationReport:
    validator = BatchValidator(today=today)
    errors: list[RowIssues] = []
    total = 0
    for index, record in enumerate(records):
        total += 1
        issues = validator.check(record)
        if issues:
            errors.append(RowIssues(row=data_row_number(index), issues=tuple(issues)))

    return ValidationReport(
        total=total,
        valid=total - len(errors),
        invalid=len(errors),
        duplicate_within_file=validator.duplicate_within_file,
        errors=errors,
        emails=validator.emails,
        phones=validator.phones,
    )
