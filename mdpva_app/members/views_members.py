import logging
from typing import Any

from django.core.exceptions import ValidationError
from django.core.paginator import Paginator
from django.http import HttpRequest, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST

from members.member_export import format_export_timestamp
from members.member_queries import DEFAULT_SORT, FILTER_ALL, member_list_queryset, member_stats
from members.member_records import (
    MemberRecordError,
    create_member,
    member_record_for_update,
    member_record_from_form,
    update_member,
)
from members.models import Member
from members.permissions import (
    MEMBERS_ADD_MEMBER,
    MEMBERS_CHANGE_MEMBER,
    MEMBERS_DELETE_MEMBER,
    MEMBERS_VIEW_MEMBER,
    json_permission_required,
)
from members.photo_storage import thumbnail_url, upload_profile_photo
from members.pincode_lookup import lookup_pincode
from members.views_utils import _normalize_str, parse_positive_int

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _member_json(member: Member) -> dict[str, Any]:
    return {
        "member_id": member.member_id,
        "first_name": member.first_name,
        "last_name": member.last_name,
        "email": member.email,
        "phone": member.phone,
        "profession": member.profession,
        "business_name": member.business_name,
        "address_line1": member.address_line1,
        "address_line2": member.address_line2,
        "area": member.area,
        "city": member.city,
        "state": member.state,
        "pincode": member.pincode,
        "status": member.status,
        "dob": member.dob.isoformat() if member.dob else None,
        "blood_group": member.blood_group,
        "notes": member.notes,
        "profile_photo_url": member.profile_photo_url,
        "thumbnail_url": thumbnail_url(member.profile_photo_url, width=96, height=96, quality=70, resize="cover"),
        "created_at": format_export_timestamp(member.created_at),
        "updated_at": format_export_timestamp(member.updated_at),
    }


@require_GET
@json_permission_required(MEMBERS_VIEW_MEMBER)
def member_list(request: HttpRequest) -> JsonResponse:
    queryset = member_list_queryset(
        query=_normalize_str(request.GET.get("q")),
        member_filter=_normalize_str(request.GET.get("filter")) or FILTER_ALL,
        sort=_normalize_str(request.GET.get("sort")) or DEFAULT_SORT,
    )
    page_size = parse_positive_int(request.GET.get("page_size"), default=DEFAULT_PAGE_SIZE, maximum=MAX_PAGE_SIZE)
    paginator = Paginator(queryset, page_size)
    page = paginator.get_page(parse_positive_int(request.GET.get("page"), default=1))

    return JsonResponse(
        {
            "members": [_member_json(member) for member in page.object_list],
            "total": paginator.count,
            "page": page.number,
            "pageSize": page_size,
        }
    )


@require_GET
@json_permission_required(MEMBERS_VIEW_MEMBER)
def member_stats_view(request: HttpRequest) -> JsonResponse:
    return JsonResponse(member_stats())


@require_POST
@json_permission_required(MEMBERS_ADD_MEMBER)
def member_create(request: HttpRequest) -> JsonResponse:
    record = member_record_from_form(request.POST, defaults={"status": Member.Status.active})
    try:
        member = create_member(record)
    except MemberRecordError as exc:
        return JsonResponse(exc.as_dict(), status=exc.status)

    logger.info("Member create by user=%s member_id=%s", request.user.get_username(), member.member_id)
    return JsonResponse({"member": _member_json(member)}, status=201)


@require_POST
@json_permission_required(MEMBERS_CHANGE_MEMBER)
def member_update(request: HttpRequest, member_id: str) -> JsonResponse:
    member = get_object_or_404(Member.objects.active(), member_id=member_id)
    try:
        member = update_member(member, member_record_for_update(member, request.POST))
    except MemberRecordError as exc:
        return JsonResponse(exc.as_dict(), status=exc.status)

    logger.info("Member update by user=%s member_id=%s", request.user.get_username(), member.member_id)
    return JsonResponse({"member": _member_json(member)})


@require_POST
@json_permission_required(MEMBERS_DELETE_MEMBER)
def member_delete(request: HttpRequest, member_id: str) -> JsonResponse:
    member = get_object_or_404(Member.objects.active(), member_id=member_id)
    member.soft_delete()
    logger.info("Member soft delete by user=%s member_id=%s", request.user.get_username(), member.member_id)
    return JsonResponse({"status": "deleted", "member_id": member.member_id})


@require_POST
@json_permission_required(MEMBERS_CHANGE_MEMBER)
def member_restore(request: HttpRequest, member_id: str) -> JsonResponse:
    member = get_object_or_404(Member.objects.deleted(), member_id=member_id)

    conflict = (
        Member.objects.active()
        .matching_contact(email=member.email, phone=member.phone)
        .exclude(pk=member.pk)
        .first()
    )
    if conflict is not None:
        return JsonResponse(
            {"error": f"Another active member ({conflict.member_id}) uses this email or phone."},
            status=409,
        )

    member.undelete()
    logger.info("Member restore by user=%s member_id=%s", request.user.get_username(), member.member_id)
    return JsonResponse({"status": "restored", "member_id": member.member_id})


@require_POST
@json_permission_required(MEMBERS_CHANGE_MEMBER)
def member_photo_upload(request: HttpRequest, member_id: str) -> JsonResponse:
    member = get_object_or_404(Member.objects.active(), member_id=member_id)
    uploaded = request.FILES.get("photo")
    if uploaded is None:
        return JsonResponse({"error": "Missing photo"}, status=400)

    try:
        url = upload_profile_photo(member, uploaded)
    except ValidationError as exc:
        return JsonResponse({"error": " ".join(exc.messages)}, status=400)

    return JsonResponse({"url": url})


@require_GET
@json_permission_required(MEMBERS_VIEW_MEMBER)
def pincode_lookup(request: HttpRequest, pincode: str) -> JsonResponse:
    return JsonResponse(lookup_pincode(pincode).as_dict())
