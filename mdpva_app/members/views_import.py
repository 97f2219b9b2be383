import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_POST

from members.member_csv_import import (
    MemberImportInputError,
    apply_member_csv,
    dry_run_report,
    header_report,
    parse_column_mapping,
    parse_duplicate_policy,
    read_member_csv_upload,
)
from members.permissions import MEMBER_IMPORT_PERMISSIONS, json_permission_required_all
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

PHASE_HEADERS = "headers"
PHASE_ROWS = "rows"


@require_POST
@json_permission_required_all(MEMBER_IMPORT_PERMISSIONS)
def member_import(request: HttpRequest) -> JsonResponse:
    """Analyse or apply a member CSV upload.

    `?dryRun=true&phase=headers` reports headers and a preview, `?dryRun=true&phase=rows`
    validates every row without writing, and a request without `dryRun` applies
    the file. Every phase re-reads the uploaded file.
    """
    dry_run = _normalize_str(request.GET.get("dryRun")).lower() == "true"
    phase = _normalize_str(request.GET.get("phase")).lower() or PHASE_HEADERS

    try:
        upload = read_member_csv_upload(request.FILES.get("file"))
        base = header_report(upload)

        if dry_run and phase == PHASE_HEADERS:
            return JsonResponse(base)

        mapping = parse_column_mapping(request.POST.get("mapping"))
        duplicate_policy = parse_duplicate_policy(request.POST.get("duplicatePolicy"))

        if dry_run:
            payload = dry_run_report(upload, mapping)
        else:
            logger.info(
                "Member CSV import requested by user=%s file=%r rows=%d policy=%s",
                request.user.get_username(),
                upload.file_name,
                len(upload.data_rows),
                duplicate_policy,
            )
            payload = apply_member_csv(upload, mapping, duplicate_policy=duplicate_policy)
    except MemberImportInputError as exc:
        return JsonResponse({"error": exc.message}, status=exc.status)
    except Exception as exc:
        logger.exception("Member CSV import failed dry_run=%s phase=%s", dry_run, phase)
        return JsonResponse({"error": str(exc) or "Failed to process file"}, status=500)

    return JsonResponse({**base, "duplicatePolicy": str(duplicate_policy), **payload})
