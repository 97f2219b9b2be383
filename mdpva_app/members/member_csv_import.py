import enum
import json
import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, override

from django.conf import settings
from django.core.files.uploadedfile import UploadedFile
from django.db import DatabaseError, transaction
from import_export import fields, resources
from tablib import Dataset

from members.csv_import_utils import (
    IGNORE_COLUMN,
    MEMBER_REQUIRED_FIELDS,
    MEMBER_TARGET_FIELDS,
    MalformedRowError,
    map_csv_rows,
    missing_required_headers,
    normalize_csv_email,
    normalize_csv_phone,
    parse_csv_dob,
    suggest_column_mapping,
    tokenize_csv,
)
from members.member_ids import DatabaseSequenceAllocator, SequenceAllocator, next_member_id
from members.member_validation import data_row_number, validate_member_rows
from members.models import Member
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

PREVIEW_ROW_COUNT = 5

_OPTIONAL_TEXT_FIELDS: tuple[str, ...] = (
    "business_name",
    "address_line2",
    "area",
    "blood_group",
    "notes",
)


class DuplicatePolicy(enum.StrEnum):
    skip = "skip"
    update = "update"
    undelete = "undelete"


class RowStatus(enum.StrEnum):
    created = "created"
    updated = "updated"
    skipped = "skipped"
    undeleted = "undeleted"
    failed = "failed"


class MemberImportInputError(ValueError):
    """Rejected upload; nothing was processed."""

    def __init__(self, message: str, *, status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class RowOutcome:
    row: int
    status: RowStatus
    reason: str = ""

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"row": self.row, "status": str(self.status)}
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True)
class ParsedUpload:
    headers: list[str]
    data_rows: list[list[str]]
    file_name: str
    file_size: int


@dataclass
class ApplyReport:
    total: int
    results: list[RowOutcome] = field(default_factory=list)

    def count(self, status: RowStatus) -> int:
        return sum(1 for outcome in self.results if outcome.status == status)

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "created": self.count(RowStatus.created),
            "updated": self.count(RowStatus.updated),
            "skipped": self.count(RowStatus.skipped),
            "undeleted": self.count(RowStatus.undeleted),
            "failed": self.count(RowStatus.failed),
        }


def parse_duplicate_policy(value: object) -> DuplicatePolicy:
    raw = _normalize_str(value).lower() or DuplicatePolicy.skip.value
    try:
        return DuplicatePolicy(raw)
    except ValueError:
        raise MemberImportInputError("Invalid duplicate policy") from None


def parse_column_mapping(value: object) -> dict[str, str]:
    raw = _normalize_str(value)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        raise MemberImportInputError("Invalid mapping") from None
    if not isinstance(parsed, dict):
        raise MemberImportInputError("Invalid mapping")

    mapping: dict[str, str] = {}
    for header, target in parsed.items():
        target_name = _normalize_str(target) or IGNORE_COLUMN
        if target_name != IGNORE_COLUMN and target_name not in MEMBER_TARGET_FIELDS:
            raise MemberImportInputError("Invalid mapping")
        mapping[str(header)] = target_name
    return mapping


def parse_member_csv(text: str, *, file_name: str = "", file_size: int | None = None) -> ParsedUpload:
    try:
        table = tokenize_csv(text, strict=True)
    except MalformedRowError as exc:
        raise MemberImportInputError(f"Malformed CSV: {exc}") from exc

    if not table:
        raise MemberImportInputError("CSV is empty")

    headers = [_normalize_str(header) for header in table[0]]
    return ParsedUpload(
        headers=headers,
        data_rows=table[1:],
        file_name=file_name,
        file_size=len(text.encode("utf-8")) if file_size is None else file_size,
    )


def read_member_csv_upload(uploaded: UploadedFile | None) -> ParsedUpload:
    if uploaded is None:
        raise MemberImportInputError("Missing file")

    max_bytes = int(settings.MEMBER_IMPORT_MAX_UPLOAD_BYTES)
    size = int(uploaded.size or 0)
    if size > max_bytes:
        raise MemberImportInputError(f"File too large. Max {max_bytes // (1024 * 1024)}MB.")

    uploaded.seek(0)
    raw = uploaded.read()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise MemberImportInputError("CSV must be UTF-8 encoded") from None

    return parse_member_csv(text, file_name=str(uploaded.name or ""), file_size=size)


def header_report(upload: ParsedUpload) -> dict[str, Any]:
    """Payload shared by every import phase."""
    headers = upload.headers
    preview = [
        {header: _normalize_str(raw[index] if index < len(raw) else "") for index, header in enumerate(headers)}
        for raw in upload.data_rows[:PREVIEW_ROW_COUNT]
    ]
    return {
        "headers": headers,
        "totalRows": len(upload.data_rows),
        "preview": preview,
        "required": list(MEMBER_REQUIRED_FIELDS),
        "missingRequired": missing_required_headers(headers),
        "suggestions": suggest_column_mapping(headers),
        "fileName": upload.file_name,
        "fileSize": upload.file_size,
    }


def _batched(values: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def count_existing_duplicates(
    emails: Iterable[str],
    phones: Iterable[str],
    *,
    batch_size: int | None = None,
) -> int:
    """Estimate how many stored members (soft-deleted included) share an email or phone.

    A member matching on both columns is counted twice. Failed batches are
    logged and left out of the estimate.
    """
    size = int(batch_size or settings.MEMBER_DUPLICATE_LOOKUP_BATCH_SIZE)
    total = 0
    for column, values in (("email", sorted(set(emails))), ("phone", sorted(set(phones)))):
        for chunk in _batched(values, size):
            try:
                total += Member.objects.filter(**{f"{column}__in": list(chunk)}).count()
            except DatabaseError:
                logger.exception(
                    "Member CSV import: duplicate lookup batch failed column=%s batch_size=%d",
                    column,
                    len(chunk),
                )
    return total


def dry_run_report(upload: ParsedUpload, mapping: Mapping[str, str]) -> dict[str, Any]:
    records = list(map_csv_rows(upload.headers, upload.data_rows, mapping))
    report = validate_member_rows(records)
    duplicate_existing = count_existing_duplicates(report.emails, report.phones)

    logger.info(
        "Member CSV import dry run: rows=%d valid=%d invalid=%d duplicate_within_file=%d duplicate_existing=%d",
        report.total,
        report.valid,
        report.invalid,
        report.duplicate_within_file,
        duplicate_existing,
    )
    return {
        "summary": {
            "total": report.total,
            "valid": report.valid,
            "invalid": report.invalid,
            "duplicateWithinFile": report.duplicate_within_file,
            "duplicateExisting": duplicate_existing,
        },
        "errors": [issue.as_dict() for issue in report.errors],
    }


def member_payload(record: Mapping[str, Any]) -> dict[str, Any]:
    """Column values for Member as they are written by the importer."""
    payload: dict[str, Any] = {
        "first_name": _normalize_str(record.get("first_name")),
        "last_name": _normalize_str(record.get("last_name")),
        "email": normalize_csv_email(record.get("email")),
        "phone": normalize_csv_phone(record.get("phone")),
        "profession": _normalize_str(record.get("profession")).lower(),
        "address_line1": _normalize_str(record.get("address_line1")),
        "pincode": _normalize_str(record.get("pincode")),
        "city": _normalize_str(record.get("city")),
        "state": _normalize_str(record.get("state")),
        "status": _normalize_str(record.get("status")).lower(),
        "dob": parse_csv_dob(record.get("dob")),
    }
    for field_name in _OPTIONAL_TEXT_FIELDS:
        payload[field_name] = _normalize_str(record.get(field_name)) or None
    if payload["blood_group"]:
        payload["blood_group"] = payload["blood_group"].upper()
    return payload


class _Action(enum.StrEnum):
    insert = "INSERT"
    update = "UPDATE"
    undelete = "UNDELETE"
    skip = "SKIP"
    fail = "FAIL"


@dataclass(frozen=True)
class _RowDecision:
    action: _Action
    reason: str = ""


_WRITE_STAGES: dict[_Action, str] = {
    _Action.insert: "Insert",
    _Action.update: "Update",
    _Action.undelete: "Undelete",
}

_WRITE_OUTCOMES: dict[_Action, RowStatus] = {
    _Action.insert: RowStatus.created,
    _Action.update: RowStatus.updated,
    _Action.undelete: RowStatus.undeleted,
}

# `undelete` only resurrects soft-deleted rows; an active duplicate is left untouched.
_UNDELETE_ACTIVE_DUPLICATE = _RowDecision(_Action.skip, "Duplicate existing")


def resolve_duplicate(existing: Member | None, policy: DuplicatePolicy) -> _RowDecision:
    if existing is None:
        return _RowDecision(_Action.insert)

    if existing.is_deleted:
        if policy == DuplicatePolicy.undelete:
            return _RowDecision(_Action.undelete)
        return _RowDecision(_Action.skip, "Soft-deleted duplicate")

    if policy == DuplicatePolicy.update:
        return _RowDecision(_Action.update)
    if policy == DuplicatePolicy.undelete:
        return _UNDELETE_ACTIVE_DUPLICATE
    return _RowDecision(_Action.skip, "Duplicate existing")


@dataclass
class _RowState:
    row_number: int
    payload: dict[str, Any]
    stage: str = "Lookup"
    decision: _RowDecision | None = None
    recorded: bool = False


class MemberCSVImportResource(resources.ModelResource):
    """Applies mapped member rows one by one, recording an outcome for every row.

    Rows are never rolled back together: each write runs in its own savepoint,
    so a failing row leaves earlier rows committed.
    """

    decision = fields.Field(attribute="decision", column_name="Decision", readonly=True)
    decision_reason = fields.Field(attribute="decision_reason", column_name="Decision Reason", readonly=True)

    class Meta:
        model = Member
        # Rows are matched on email/phone in get_instance(), not on an id column.
        import_id_fields = ()
        fields = ("decision", "decision_reason")
        use_transactions = False
        use_bulk = False
        skip_diff = True

    def __init__(
        self,
        *,
        duplicate_policy: DuplicatePolicy = DuplicatePolicy.skip,
        allocator: SequenceAllocator | None = None,
        year: int | None = None,
    ) -> None:
        super().__init__()
        self._duplicate_policy = DuplicatePolicy(duplicate_policy)
        self._allocator = allocator or DatabaseSequenceAllocator()
        self._year = year
        self._row_offset = 0
        self._row_index = 0
        self._current: _RowState | None = None
        self.outcomes: list[RowOutcome] = []

    def import_chunk(self, dataset: Dataset, *, row_offset: int) -> None:
        """Import one chunk; `row_offset` is the index of its first row in the whole file."""
        self._row_offset = row_offset
        self._row_index = 0
        self.import_data(dataset, dry_run=False, raise_errors=False)

    def _record(self, state: _RowState, status: RowStatus, reason: str = "") -> None:
        if state.recorded:
            return
        state.recorded = True
        self.outcomes.append(RowOutcome(row=state.row_number, status=status, reason=reason))

    def _decision_for_row(self, state: _RowState, existing: Member | None) -> _RowDecision:
        missing = [name for name in MEMBER_REQUIRED_FIELDS if not state.payload.get(name)]
        if missing:
            return _RowDecision(_Action.fail, f"Missing required: {', '.join(missing)}")
        return resolve_duplicate(existing, self._duplicate_policy)

    @override
    def import_row(self, row: Any, instance_loader: Any, **kwargs: Any) -> Any:
        state = _RowState(
            row_number=data_row_number(self._row_offset + self._row_index),
            payload=member_payload(row),
        )
        self._row_index += 1
        self._current = state

        row_result = super().import_row(row, instance_loader, **kwargs)

        if not state.recorded:
            # import-export turned an unexpected exception into an error row.
            errors = list(getattr(row_result, "errors", None) or [])
            validation_error = getattr(row_result, "validation_error", None)
            if errors:
                message = str(errors[-1].error)
            elif validation_error is not None:
                message = str(validation_error)
            else:
                message = "row was not processed"
            logger.error(
                "Member CSV import: row crashed row=%d stage=%s error=%s",
                state.row_number,
                state.stage,
                message,
            )
            self._record(state, RowStatus.failed, f"{state.stage} failed: {message}")

        self._current = None
        return row_result

    @override
    def get_instance(self, instance_loader: Any, row: Any) -> Member | None:
        state = self._current
        if state is None:
            return None

        if any(not state.payload.get(name) for name in MEMBER_REQUIRED_FIELDS):
            state.decision = self._decision_for_row(state, None)
            return None

        try:
            existing = Member.objects.matching_contact(
                email=state.payload["email"],
                phone=state.payload["phone"],
            ).first()
        except Exception as exc:
            logger.exception("Member CSV import: lookup failed row=%d", state.row_number)
            state.decision = _RowDecision(_Action.fail, f"Lookup failed: {exc}")
            return None

        state.decision = self._decision_for_row(state, existing)
        return existing

    @override
    def import_instance(self, instance: Member, row: Any, **kwargs: Any) -> None:
        state = self._current
        if state is None or state.decision is None:
            return

        instance.decision = state.decision.action.value
        instance.decision_reason = state.decision.reason
        if state.decision.action not in _WRITE_STAGES:
            return

        for field_name, value in state.payload.items():
            setattr(instance, field_name, value)

    @override
    def skip_row(self, instance: Any, original: Any, row: Any, import_validation_errors: Any = None) -> bool:
        state = self._current
        if state is None or state.decision is None:
            return True

        decision = state.decision
        if decision.action == _Action.fail:
            self._record(state, RowStatus.failed, decision.reason)
            return True
        if decision.action == _Action.skip:
            self._record(state, RowStatus.skipped, decision.reason)
            return True
        return False

    @override
    def save_instance(self, instance: Any, is_create: bool, row: Any, **kwargs: Any) -> None:
        if bool(kwargs.get("dry_run")):
            return

        state = self._current
        if state is None or state.decision is None or state.decision.action not in _WRITE_STAGES:
            return

        action = state.decision.action
        state.stage = _WRITE_STAGES[action]
        try:
            with transaction.atomic():
                if action == _Action.insert:
                    instance.member_id = self._next_member_id()
                elif action == _Action.undelete:
                    instance.deleted_at = None
                super().save_instance(instance, is_create, row, **kwargs)
        except Exception as exc:
            logger.exception(
                "Member CSV import: %s failed row=%d member_id=%s",
                state.stage.lower(),
                state.row_number,
                getattr(instance, "member_id", ""),
            )
            self._record(state, RowStatus.failed, f"{state.stage} failed: {exc}")
            return

        self._record(state, _WRITE_OUTCOMES[action])

    def _next_member_id(self) -> str:
        return next_member_id(year=self._year, allocator=self._allocator)


def _dataset_for_records(records: Sequence[Mapping[str, str]]) -> Dataset:
    dataset = Dataset(headers=list(MEMBER_TARGET_FIELDS))
    for record in records:
        dataset.append([_normalize_str(record.get(field_name)) for field_name in MEMBER_TARGET_FIELDS])
    return dataset


def apply_member_rows(
    records: Sequence[Mapping[str, str]],
    *,
    duplicate_policy: DuplicatePolicy,
    chunk_size: int | None = None,
    allocator: SequenceAllocator | None = None,
    year: int | None = None,
) -> ApplyReport:
    size = int(chunk_size or settings.MEMBER_IMPORT_CHUNK_SIZE)
    resource = MemberCSVImportResource(duplicate_policy=duplicate_policy, allocator=allocator, year=year)
    batch_id = uuid.uuid4()

    outcome = "applied"
    try:
        for start in range(0, len(records), size):
            resource.import_chunk(_dataset_for_records(records[start : start + size]), row_offset=start)
    except Exception:
        outcome = "failed"
        raise
    finally:
        report = ApplyReport(total=len(records), results=sorted(resource.outcomes, key=lambda item: item.row))
        summary = report.summary()
        logger.info(
            (
                "event=mdpva.members.csv_import.batch_applied "
                f"component=members outcome={outcome} batch_id={batch_id} "
                f"policy={duplicate_policy} rows_total={summary['total']} "
                f"created={summary['created']} updated={summary['updated']} skipped={summary['skipped']} "
                f"undeleted={summary['undeleted']} failed={summary['failed']}"
            ),
            extra={
                "event": "mdpva.members.csv_import.batch_applied",
                "component": "members",
                "outcome": outcome,
                "batch_id": str(batch_id),
                "duplicate_policy": str(duplicate_policy),
                "rows_total": summary["total"],
                "rows_created": summary["created"],
                "rows_updated": summary["updated"],
                "rows_skipped": summary["skipped"],
                "rows_undeleted": summary["undeleted"],
                "rows_failed": summary["failed"],
            },
        )

    return report


def apply_member_csv(
    upload: ParsedUpload,
    mapping: Mapping[str, str],
    *,
    duplicate_policy: DuplicatePolicy,
    chunk_size: int | None = None,
    allocator: SequenceAllocator | None = None,
) -> dict[str, Any]:
    records = list(map_csv_rows(upload.headers, upload.data_rows, mapping))
    report = apply_member_rows(
        records,
        duplicate_policy=duplicate_policy,
        chunk_size=chunk_size,
        allocator=allocator,
    )
    return {
        "summary": report.summary(),
        "results": [item.as_dict() for item in report.results],
    }
