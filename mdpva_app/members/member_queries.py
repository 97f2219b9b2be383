import datetime
import re

from django.db.models import F, OrderBy, Q
from django.utils import timezone

from members.models import Member, MemberQuerySet
from members.views_utils import _normalize_str

_MEMBER_ID_QUERY = re.compile(r"^MDPVA", re.IGNORECASE)

FILTER_ALL = "all"
FILTER_ACTIVE = "active"
FILTER_INACTIVE = "inactive"
FILTER_NEW_THIS_MONTH = "newThisMonth"

MEMBER_FILTERS: tuple[str, ...] = (FILTER_ALL, FILTER_ACTIVE, FILTER_INACTIVE, FILTER_NEW_THIS_MONTH)

DEFAULT_SORT = "created_desc"

MEMBER_SORTS: dict[str, tuple[OrderBy, ...]] = {
    "created_desc": (F("created_at").desc(), F("member_id").desc()),
    "created_asc": (F("created_at").asc(), F("member_id").asc()),
    "name_asc": (F("last_name").asc(nulls_first=True), F("first_name").asc(nulls_first=True)),
    "name_desc": (F("last_name").desc(nulls_last=True), F("first_name").desc(nulls_last=True)),
    "updated_desc": (F("updated_at").desc(nulls_last=True), F("created_at").desc()),
    "id_asc": (F("member_id").asc(),),
    "id_desc": (F("member_id").desc(),),
}


def start_of_current_month(now: datetime.datetime | None = None) -> datetime.datetime:
    local_now = timezone.localtime(now or timezone.now())
    return local_now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def search_members(queryset: MemberQuerySet, query: str) -> MemberQuerySet:
    term = _normalize_str(query)
    if not term:
        return queryset
    if _MEMBER_ID_QUERY.match(term):
        return queryset.filter(member_id__istartswith=term.upper())
    return queryset.filter(
        Q(first_name__icontains=term)
        | Q(last_name__icontains=term)
        | Q(email__icontains=term)
        | Q(phone__icontains=term)
        | Q(member_id__icontains=term)
    )


def filter_members(
    queryset: MemberQuerySet,
    member_filter: str,
    *,
    now: datetime.datetime | None = None,
) -> MemberQuerySet:
    match _normalize_str(member_filter):
        case "active":
            return queryset.filter(status=Member.Status.active)
        case "inactive":
            return queryset.filter(status=Member.Status.inactive)
        case "newThisMonth":
            return queryset.filter(created_at__gte=start_of_current_month(now))
        case _:
            return queryset


def sort_members(queryset: MemberQuerySet, sort: str) -> MemberQuerySet:
    ordering = MEMBER_SORTS.get(_normalize_str(sort), MEMBER_SORTS[DEFAULT_SORT])
    return queryset.order_by(*ordering)


def member_list_queryset(
    *,
    query: str = "",
    member_filter: str = FILTER_ALL,
    sort: str = DEFAULT_SORT,
    now: datetime.datetime | None = None,
) -> MemberQuerySet:
    """Non-deleted members narrowed the way the members table shows them."""
    queryset = Member.objects.active()
    queryset = search_members(queryset, query)
    queryset = filter_members(queryset, member_filter, now=now)
    return sort_members(queryset, sort)


def member_stats(*, now: datetime.datetime | None = None) -> dict[str, int]:
    queryset = Member.objects.active()
    return {
        "total": queryset.count(),
        "active": queryset.filter(status=Member.Status.active).count(),
        "inactive": queryset.filter(status=Member.Status.inactive).count(),
        "newThisMonth": queryset.filter(created_at__gte=start_of_current_month(now)).count(),
    }
