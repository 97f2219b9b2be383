import logging
from collections.abc import Mapping
from typing import Any

from django.db import IntegrityError, transaction

from members.csv_import_utils import MEMBER_TARGET_FIELDS
from members.member_csv_import import member_payload
from members.member_ids import SequenceAllocator, next_member_id
from members.member_validation import validate_member_record
from members.models import Member
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

EMAIL_TAKEN = "This email is already registered"
PHONE_TAKEN = "This phone number is already registered"
DUPLICATE_VALUE = "Duplicate value detected"


class MemberRecordError(ValueError):
    status = 400

    def as_dict(self) -> dict[str, Any]:
        raise NotImplementedError


class MemberValidationError(MemberRecordError):
    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues))
        self.issues = issues

    def as_dict(self) -> dict[str, Any]:
        return {"error": "Invalid member", "issues": self.issues}


class MemberConflictError(MemberRecordError):
    """An active member already holds the email and/or phone."""

    status = 409

    def __init__(self, fields: Mapping[str, str]) -> None:
        super().__init__("; ".join(fields.values()))
        self.fields = dict(fields)

    def as_dict(self) -> dict[str, Any]:
        return {"error": "Duplicate member", "fields": self.fields}


def member_record_from_form(data: Mapping[str, Any], *, defaults: Mapping[str, str] | None = None) -> dict[str, str]:
    record = {name: _normalize_str(data.get(name)) for name in MEMBER_TARGET_FIELDS}
    for name, value in (defaults or {}).items():
        if not record[name]:
            record[name] = value
    return record


def member_record_from_instance(member: Member) -> dict[str, str]:
    """Stored values in the same string form a CSV row or form post carries."""
    record: dict[str, str] = {}
    for name in MEMBER_TARGET_FIELDS:
        value = getattr(member, name)
        if name == "dob":
            record[name] = value.strftime("%d/%m/%Y") if value else ""
        else:
            record[name] = _normalize_str(value)
    return record


def member_record_for_update(member: Member, data: Mapping[str, Any]) -> dict[str, str]:
    # Fields missing from the post keep their stored value; posted blanks clear optional fields.
    record = member_record_from_instance(member)
    for name in MEMBER_TARGET_FIELDS:
        if name in data:
            record[name] = _normalize_str(data.get(name))
    return record


def contact_conflicts(email: str, phone: str, *, exclude_pk: int | None = None) -> dict[str, str]:
    active = Member.objects.active()
    if exclude_pk is not None:
        active = active.exclude(pk=exclude_pk)

    conflicts: dict[str, str] = {}
    if email and active.filter(email=email).exists():
        conflicts["email"] = EMAIL_TAKEN
    if phone and active.filter(phone=phone).exists():
        conflicts["phone"] = PHONE_TAKEN
    return conflicts


def _checked_payload(record: Mapping[str, str], *, exclude_pk: int | None = None) -> dict[str, Any]:
    issues = validate_member_record(record)
    if issues:
        raise MemberValidationError(issues)

    payload = member_payload(record)
    conflicts = contact_conflicts(payload["email"], payload["phone"], exclude_pk=exclude_pk)
    if conflicts:
        raise MemberConflictError(conflicts)
    return payload


def create_member(record: Mapping[str, str], *, allocator: SequenceAllocator | None = None) -> Member:
    payload = _checked_payload(record)
    try:
        with transaction.atomic():
            member = Member.objects.create(member_id=next_member_id(allocator=allocator), **payload)
    except IntegrityError as exc:
        # A concurrent write can take the email or phone after the check.
        logger.warning("Member create hit a unique constraint: %s", exc)
        raise MemberConflictError({"general": DUPLICATE_VALUE}) from exc

    logger.info("Member created member_id=%s", member.member_id)
    return member


def update_member(member: Member, record: Mapping[str, str]) -> Member:
    payload = _checked_payload(record, exclude_pk=member.pk)
    for name, value in payload.items():
        setattr(member, name, value)
    try:
        with transaction.atomic():
            member.save()
    except IntegrityError as exc:
        logger.warning("Member update hit a unique constraint member_id=%s: %s", member.member_id, exc)
        raise MemberConflictError({"general": DUPLICATE_VALUE}) from exc

    logger.info("Member updated member_id=%s", member.member_id)
    return member
