import logging

from django.conf import settings
from django.http import HttpRequest, HttpResponse, StreamingHttpResponse
from django.utils import timezone
from django.views.decorators.http import require_GET

from members.member_export import (
    ExportFormat,
    ExportRequest,
    UnsupportedExportFormat,
    active_member_count,
    collect_pdf_members,
    export_filename,
    export_queryset,
    render_members_pdf,
    stream_members_csv,
)
from members.permissions import MEMBERS_VIEW_MEMBER, json_permission_required
from members.rate_limit import RateLimiter
from members.views_utils import _client_ip, _request_id, hash_for_log

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again in a minute."


def export_rate_limiter() -> RateLimiter:
    return RateLimiter(
        scope="members.export",
        limit=int(settings.MEMBER_EXPORT_RATE_LIMIT_LIMIT),
        window_seconds=int(settings.MEMBER_EXPORT_RATE_LIMIT_WINDOW_SECONDS),
    )


def _emit_rate_limit_denial_log(request: HttpRequest, limiter: RateLimiter) -> None:
    client_ip = _client_ip(request)

    log_payload: dict[str, str | int | bool] = {
        "event": "mdpva.security.rate_limit.denied",
        "component": "members",
        "outcome": "denied",
        "endpoint": "members.export",
        "http_method": request.method or "GET",
        "limit": limiter.limit,
        "window_seconds": limiter.window_seconds,
    }

    request_id = _request_id(request)
    if request_id:
        log_payload["request_id"] = request_id

    if client_ip:
        log_payload["ip_hash"] = hash_for_log(client_ip)
    else:
        log_payload["ip_present"] = False

    logger.warning(
        "event=mdpva.security.rate_limit.denied component=members endpoint=members.export",
        extra=log_payload,
    )


def _attachment_headers(response: HttpResponse, filename: str) -> HttpResponse:
    response["Content-Disposition"] = f'attachment; filename="{filename}"'
    response["Cache-Control"] = "no-store"
    return response


@require_GET
@json_permission_required(MEMBERS_VIEW_MEMBER)
def member_export(request: HttpRequest) -> HttpResponse:
    limiter = export_rate_limiter()
    if not limiter.allow(_client_ip(request) or "unknown"):
        _emit_rate_limit_denial_log(request, limiter)
        return HttpResponse(RATE_LIMIT_MESSAGE, status=429, content_type="text/plain; charset=utf-8")

    try:
        export = ExportRequest.from_params(request.GET)
    except UnsupportedExportFormat as exc:
        return HttpResponse(str(exc), status=400, content_type="text/plain; charset=utf-8")

    queryset = export_queryset(export)
    now = timezone.now()

    if export.format == ExportFormat.pdf:
        try:
            members = collect_pdf_members(queryset)
            content = render_members_pdf(members, active_count=active_member_count(), now=now)
        except Exception:
            logger.exception("Member PDF export failed scope=%s", export.scope)
            return HttpResponse("Failed to export members.", status=500, content_type="text/plain; charset=utf-8")

        logger.info(
            "Member PDF export user=%s scope=%s members=%d",
            request.user.get_username(),
            export.scope,
            len(members),
        )
        response = HttpResponse(content, content_type="application/pdf")
        return _attachment_headers(response, export_filename(export.scope, ExportFormat.pdf, now=now))

    total = queryset.count()
    logger.info(
        "Member CSV export user=%s scope=%s filter=%s sort=%s rows=%d",
        request.user.get_username(),
        export.scope,
        export.member_filter,
        export.sort,
        total,
    )
    response = StreamingHttpResponse(
        stream_members_csv(queryset, export.columns),
        content_type="text/csv; charset=utf-8",
    )
    return _attachment_headers(response, export_filename(export.scope, ExportFormat.csv, now=now, count=total))
