import logging
from typing import Protocol

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from members.models import Member, MemberIdSequence

logger = logging.getLogger(__name__)

MEMBER_ID_SEQUENCE_DIGITS = 5
MEMBER_ID_SEQUENCE_MAX = 10**MEMBER_ID_SEQUENCE_DIGITS - 1


class MemberIdExhaustedError(RuntimeError):
    def __init__(self, year: int) -> None:
        super().__init__(f"Member ID sequence exhausted for year {year}")
        self.year = year


def member_id_prefix(year: int) -> str:
    return f"{settings.MEMBER_ID_PREFIX}{year % 100:02d}"


def format_member_id(year: int, value: int) -> str:
    if value > MEMBER_ID_SEQUENCE_MAX:
        raise MemberIdExhaustedError(year)
    return f"{member_id_prefix(year)}{value:0{MEMBER_ID_SEQUENCE_DIGITS}d}"


def _sequence_value(member_id: str, prefix: str) -> int:
    suffix = member_id.removeprefix(prefix)[-MEMBER_ID_SEQUENCE_DIGITS:]
    try:
        return int(suffix)
    except ValueError:
        return 0


def highest_issued_sequence(year: int) -> int:
    prefix = member_id_prefix(year)
    # Fixed-width IDs, so the lexicographic max is the numeric max.
    latest = (
        Member.objects.filter(member_id__startswith=prefix)
        .order_by("-member_id")
        .values_list("member_id", flat=True)
        .first()
    )
    if not latest:
        return 0
    return _sequence_value(latest, prefix)


def next_member_id_from_store(year: int) -> str:
    """Read-max-then-compute. Not safe under concurrent inserts on its own."""
    return format_member_id(year, highest_issued_sequence(year) + 1)


class SequenceAllocator(Protocol):
    def allocate(self, year: int) -> str: ...


class DatabaseSequenceAllocator:
    """Issues IDs from a per-year counter row locked for the duration of the transaction.

    The row is seeded from the highest ID already stored, so IDs created before
    the counter existed are never reissued.
    """

    def allocate(self, year: int) -> str:
        with transaction.atomic():
            sequence = self._locked_sequence(year)
            next_value = sequence.last_value + 1
            member_id = format_member_id(year, next_value)
            sequence.last_value = next_value
            sequence.save(update_fields=["last_value"])

        logger.debug("Allocated member_id=%s year=%d", member_id, year)
        return member_id

    def _locked_sequence(self, year: int) -> MemberIdSequence:
        sequence = MemberIdSequence.objects.select_for_update().filter(year=year).first()
        if sequence is not None:
            return sequence

        try:
            with transaction.atomic():
                MemberIdSequence.objects.create(year=year, last_value=highest_issued_sequence(year))
        except IntegrityError:
            # Another worker seeded the row first.
            pass
        return MemberIdSequence.objects.select_for_update().get(year=year)


class StoreScanAllocator:
    """Allocator without a counter row, for stores where only the member table is available."""

    def allocate(self, year: int) -> str:
        return next_member_id_from_store(year)


_default_allocator: SequenceAllocator = DatabaseSequenceAllocator()


def next_member_id(*, year: int | None = None, allocator: SequenceAllocator | None = None) -> str:
    resolved_year = year if year is not None else timezone.localdate().year
    return (allocator or _default_allocator).allocate(resolved_year)
