from __future__ import annotations

import datetime
import enum
import io
import logging
import math
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from zoneinfo import ZoneInfo

import requests
from django.conf import settings
from django.utils import timezone
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from members.csv_import_utils import csv_escape
from members.member_queries import DEFAULT_SORT, FILTER_ALL, MEMBER_SORTS, member_list_queryset
from members.models import Member, MemberQuerySet
from members.photo_storage import thumbnail_url
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_COLUMNS: tuple[str, ...] = (
    "member_id",
    "first_name",
    "last_name",
    "status",
    "email",
    "phone",
    "profession",
    "business_name",
    "address_line1",
    "address_line2",
    "area",
    "city",
    "state",
    "pincode",
    "created_at",
    "updated_at",
)
EXTRA_EXPORT_COLUMNS: tuple[str, ...] = ("profile_photo_url", "notes")
_TIMESTAMP_COLUMNS: frozenset[str] = frozenset({"created_at", "updated_at"})

_PDF_COLUMNS: tuple[str, ...] = (
    "member_id",
    "first_name",
    "last_name",
    "phone",
    "profession",
    "city",
    "state",
    "status",
    "created_at",
    "profile_photo_url",
)

CSV_BOM = "\ufeff"


class ExportScope(enum.StrEnum):
    current = "current"
    all = "all"


class ExportFormat(enum.StrEnum):
    csv = "csv"
    pdf = "pdf"


class UnsupportedExportFormat(ValueError):
    pass


@dataclass(frozen=True)
class ExportRequest:
    scope: ExportScope = ExportScope.current
    format: ExportFormat = ExportFormat.csv
    query: str = ""
    member_filter: str = FILTER_ALL
    sort: str = DEFAULT_SORT
    include_extra_columns: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ExportRequest:
        raw_format = _normalize_str(params.get("format")).lower() or ExportFormat.csv.value
        try:
            export_format = ExportFormat(raw_format)
        except ValueError:
            raise UnsupportedExportFormat("Unsupported format.") from None

        raw_scope = _normalize_str(params.get("scope")).lower()
        scope = ExportScope.all if raw_scope == ExportScope.all.value else ExportScope.current

        sort = _normalize_str(params.get("sort")) or DEFAULT_SORT
        if sort not in MEMBER_SORTS:
            sort = DEFAULT_SORT

        return cls(
            scope=scope,
            format=export_format,
            query=_normalize_str(params.get("q")),
            member_filter=_normalize_str(params.get("filter")) or FILTER_ALL,
            sort=sort,
            include_extra_columns=_normalize_str(params.get("columns")).lower() == "all",
        )

    @property
    def columns(self) -> tuple[str, ...]:
        if self.include_extra_columns:
            return DEFAULT_EXPORT_COLUMNS + EXTRA_EXPORT_COLUMNS
        return DEFAULT_EXPORT_COLUMNS


def export_queryset(export: ExportRequest) -> MemberQuerySet:
    if export.scope == ExportScope.all:
        return Member.objects.active().order_by(*MEMBER_SORTS[DEFAULT_SORT])
    return member_list_queryset(query=export.query, member_filter=export.member_filter, sort=export.sort)


def iter_pages(queryset: MemberQuerySet, columns: Sequence[str], *, page_size: int | None = None) -> Iterator[list[dict[str, Any]]]:
    """Offset pagination that stops at the first short page."""
    size = int(page_size or settings.MEMBER_EXPORT_PAGE_SIZE)
    offset = 0
    while True:
        page = list(queryset.values(*columns)[offset : offset + size])
        if page:
            yield page
        if len(page) < size:
            return
        offset += size


def format_export_timestamp(value: datetime.datetime | None) -> str:
    if value is None:
        return ""
    utc_value = value.astimezone(datetime.UTC)
    return utc_value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def csv_row(row: Mapping[str, Any], columns: Sequence[str]) -> str:
    cells: list[str] = []
    for column in columns:
        value = row.get(column)
        if column in _TIMESTAMP_COLUMNS:
            value = format_export_timestamp(value)
        cells.append(csv_escape(value))
    return ",".join(cells) + "\n"


def _error_marker(message: str) -> str:
    return '\n"ERROR","' + message.replace('"', '""') + '"\n'


def stream_members_csv(
    queryset: MemberQuerySet,
    columns: Sequence[str],
    *,
    page_size: int | None = None,
) -> Iterator[str]:
    """Yield the CSV document chunk by chunk.

    Once the response has started there is no way to change its status, so a
    failing page ends the document with an ERROR line instead.
    """
    yield CSV_BOM
    yield ",".join(columns) + "\n"

    rows_written = 0
    try:
        for page in iter_pages(queryset, columns, page_size=page_size):
            yield "".join(csv_row(row, columns) for row in page)
            rows_written += len(page)
    except Exception as exc:
        logger.exception("Member CSV export failed after rows=%d", rows_written)
        yield _error_marker(str(exc) or "export failed")
        return

    logger.info("Member CSV export finished rows=%d", rows_written)


def export_local_now(now: datetime.datetime | None = None) -> datetime.datetime:
    zone = ZoneInfo(settings.MEMBER_EXPORT_TIMEZONE)
    return (now or timezone.now()).astimezone(zone)


def export_filename(
    scope: ExportScope,
    export_format: ExportFormat,
    *,
    now: datetime.datetime | None = None,
    count: int | None = None,
) -> str:
    stamp = export_local_now(now).strftime("%Y%m%d-%H%M")
    name = f"mdpva-members-{scope}-{stamp}"
    if count is not None:
        name = f"{name}-{count}"
    return f"{name}.{export_format}"


ImageFetcher = Callable[[str], bytes | None]


def fetch_thumbnail(url: str) -> bytes | None:
    try:
        response = requests.get(url, timeout=settings.MEMBER_PHOTO_FETCH_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Thumbnail fetch failed url=%s error=%s", url, exc)
        return None
    return response.content


_PAGE_WIDTH, _PAGE_HEIGHT = landscape(A4)
_MARGIN_X = 32
_MARGIN_TOP = 40
_MARGIN_BOTTOM = 40
_HEADER_HEIGHT = 66
_GRID_COLUMNS = 4
_CARD_HEIGHT = 80
_PHOTO_SIZE = 64
_CARD_PADDING = 8

_GRID_TOP = _PAGE_HEIGHT - _MARGIN_TOP - _HEADER_HEIGHT
_CARD_WIDTH = (_PAGE_WIDTH - 2 * _MARGIN_X) / _GRID_COLUMNS
_GRID_ROWS = int((_GRID_TOP - _MARGIN_BOTTOM) // _CARD_HEIGHT)
CARDS_PER_PAGE = _GRID_COLUMNS * _GRID_ROWS

_PHOTO_BACKGROUND = colors.HexColor("#f3f4f6")
_LOGO_BACKGROUND = colors.HexColor("#e5e7eb")
_MUTED_TEXT = colors.HexColor("#4b5563")
_BODY_TEXT = colors.HexColor("#111827")


def _fit_text(pdf: canvas.Canvas, text: str, font: str, size: float, width: float) -> str:
    if pdf.stringWidth(text, font, size) <= width:
        return text
    while text and pdf.stringWidth(text + "...", font, size) > width:
        text = text[:-1]
    return text + "..."


def _draw_header(pdf: canvas.Canvas, *, active_count: int) -> None:
    top = _PAGE_HEIGHT - _MARGIN_TOP
    pdf.setFillColor(_LOGO_BACKGROUND)
    pdf.roundRect(_MARGIN_X, top - 50, 50, 50, 4, stroke=0, fill=1)

    pdf.setFillColor(colors.black)
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(_MARGIN_X + 62, top - 20, f"{settings.MEMBER_EXPORT_TITLE} (MDPVA)")
    pdf.setFont("Helvetica", 9)
    pdf.setFillColor(colors.HexColor("#374151"))
    pdf.drawString(_MARGIN_X + 62, top - 34, settings.MEMBER_EXPORT_SITE)

    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(_MUTED_TEXT)
    pdf.drawRightString(_PAGE_WIDTH - _MARGIN_X, top - 25, f"Active members: {active_count}")


def _draw_footer(pdf: canvas.Canvas, *, page_number: int, total_pages: int, generated: str) -> None:
    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(_MUTED_TEXT)
    pdf.drawString(_MARGIN_X, 16, f"Page {page_number} of {total_pages}")
    pdf.drawRightString(_PAGE_WIDTH - _MARGIN_X, 16, f"Generated {generated}")


def _draw_card(pdf: canvas.Canvas, member: Mapping[str, Any], *, x: float, y: float, photo: ImageReader | None) -> None:
    photo_x = x + _CARD_PADDING
    photo_y = y - _CARD_PADDING - _PHOTO_SIZE
    if photo is not None:
        pdf.drawImage(photo, photo_x, photo_y, _PHOTO_SIZE, _PHOTO_SIZE, preserveAspectRatio=True, mask="auto")
    else:
        pdf.setFillColor(_PHOTO_BACKGROUND)
        pdf.roundRect(photo_x, photo_y, _PHOTO_SIZE, _PHOTO_SIZE, 4, stroke=0, fill=1)

    text_x = photo_x + _PHOTO_SIZE + 8
    text_width = x + _CARD_WIDTH - _CARD_PADDING - text_x
    name = " ".join(part for part in (member.get("first_name") or "", member.get("last_name") or "") if part)
    city_state = ", ".join(part for part in (member.get("city") or "", member.get("state") or "") if part)

    pdf.setFillColor(_BODY_TEXT)
    pdf.setFont("Helvetica-Bold", 9)
    pdf.drawString(
        text_x,
        y - _CARD_PADDING - 10,
        _fit_text(pdf, f"{member.get('member_id') or ''} · {name}", "Helvetica-Bold", 9, text_width),
    )
    pdf.setFont("Helvetica", 8)
    lines = (
        f"Phone: {member.get('phone') or ''}",
        f"City/State: {city_state}",
        f"Profession: {member.get('profession') or ''}",
    )
    for index, line in enumerate(lines, start=1):
        pdf.drawString(text_x, y - _CARD_PADDING - 10 - 12 * index, _fit_text(pdf, line, "Helvetica", 8, text_width))


def _load_photo(member: Mapping[str, Any], fetch_image: ImageFetcher) -> ImageReader | None:
    url = thumbnail_url(member.get("profile_photo_url"), width=96, quality=70)
    if not url:
        return None
    content = fetch_image(url)
    if not content:
        return None
    try:
        reader = ImageReader(io.BytesIO(content))
        reader.getSize()
    except Exception:
        logger.warning("Thumbnail is not a readable image url=%s", url)
        return None
    return reader


def render_members_pdf(
    members: Sequence[Mapping[str, Any]],
    *,
    active_count: int,
    now: datetime.datetime | None = None,
    fetch_image: ImageFetcher | None = None,
) -> bytes:
    """Render members as a landscape A4 card grid with a header and numbered footer."""
    fetcher = fetch_image or fetch_thumbnail
    generated = export_local_now(now).strftime("%Y-%m-%d %H:%M %Z")
    total_pages = max(1, math.ceil(len(members) / CARDS_PER_PAGE))

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(_PAGE_WIDTH, _PAGE_HEIGHT))
    pdf.setTitle(f"{settings.MEMBER_EXPORT_TITLE} members")

    for page_index in range(total_pages):
        _draw_header(pdf, active_count=active_count)
        page_members = members[page_index * CARDS_PER_PAGE : (page_index + 1) * CARDS_PER_PAGE]
        for slot, member in enumerate(page_members):
            column = slot % _GRID_COLUMNS
            row = slot // _GRID_COLUMNS
            _draw_card(
                pdf,
                member,
                x=_MARGIN_X + column * _CARD_WIDTH,
                y=_GRID_TOP - row * _CARD_HEIGHT,
                photo=_load_photo(member, fetcher),
            )
        _draw_footer(pdf, page_number=page_index + 1, total_pages=total_pages, generated=generated)
        pdf.showPage()

    pdf.save()
    return buffer.getvalue()


def collect_pdf_members(queryset: MemberQuerySet, *, page_size: int | None = None) -> list[dict[str, Any]]:
    members: list[dict[str, Any]] = []
    for page in iter_pages(queryset, _PDF_COLUMNS, page_size=page_size):
        members.extend(page)
    return members


def active_member_count() -> int:
    return Member.objects.active().filter(status=Member.Status.active).count()
