import datetime
import io
import re
from unittest.mock import patch

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from PIL import Image

from members.member_export import (
    CARDS_PER_PAGE,
    DEFAULT_EXPORT_COLUMNS,
    EXTRA_EXPORT_COLUMNS,
    ExportFormat,
    ExportRequest,
    ExportScope,
    UnsupportedExportFormat,
    collect_pdf_members,
    export_filename,
    export_queryset,
    iter_pages,
    render_members_pdf,
    stream_members_csv,
)
from members.models import Member
from members.tests.utils_test_data import make_member


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(200, 20, 20)).save(buffer, format="PNG")
    return buffer.getvalue()


class ExportRequestTests(SimpleTestCase):
    def test_defaults(self) -> None:
        export = ExportRequest.from_params({})

        self.assertEqual(export.scope, ExportScope.current)
        self.assertEqual(export.format, ExportFormat.csv)
        self.assertEqual(export.sort, "created_desc")
        self.assertEqual(export.columns, DEFAULT_EXPORT_COLUMNS)

    def test_params_are_normalized(self) -> None:
        export = ExportRequest.from_params(
            {"scope": "ALL", "format": "PDF", "sort": "bogus", "q": " rao ", "filter": "inactive", "columns": "all"}
        )

        self.assertEqual(export.scope, ExportScope.all)
        self.assertEqual(export.format, ExportFormat.pdf)
        self.assertEqual(export.sort, "created_desc")
        self.assertEqual(export.query, "rao")
        self.assertEqual(export.member_filter, "inactive")
        self.assertEqual(export.columns, DEFAULT_EXPORT_COLUMNS + EXTRA_EXPORT_COLUMNS)

    def test_unknown_format_raises(self) -> None:
        with self.assertRaisesMessage(UnsupportedExportFormat, "Unsupported format."):
            ExportRequest.from_params({"format": "xlsx"})

    def test_filename_uses_local_time_and_optional_count(self) -> None:
        now = datetime.datetime(2026, 10, 17, 6, 45, tzinfo=datetime.UTC)

        self.assertEqual(
            export_filename(ExportScope.current, ExportFormat.csv, now=now, count=12),
            "mdpva-members-current-20261017-1215-12.csv",
        )
        self.assertEqual(
            export_filename(ExportScope.all, ExportFormat.pdf, now=now),
            "mdpva-members-all-20261017-1215.pdf",
        )


class ExportStreamTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        for index in range(5):
            make_member(
                member_id=f"MDPVA26{index + 1:05d}",
                email=f"m{index}@example.com",
                phone=f"98450{index:05d}",
            )

    def test_iter_pages_stops_on_short_page(self) -> None:
        queryset = export_queryset(ExportRequest(scope=ExportScope.all))

        pages = list(iter_pages(queryset, ("member_id",), page_size=2))

        self.assertEqual([len(page) for page in pages], [2, 2, 1])
        self.assertEqual(pages[0][0]["member_id"], "MDPVA2600005")

    def test_all_scope_ignores_search_and_excludes_soft_deleted(self) -> None:
        Member.objects.get(member_id="MDPVA2600002").soft_delete()

        queryset = export_queryset(ExportRequest(scope=ExportScope.all, query="nobody", member_filter="inactive"))

        self.assertEqual(queryset.count(), 4)

    def test_stream_writes_one_line_per_member(self) -> None:
        queryset = export_queryset(ExportRequest(scope=ExportScope.all))

        body = "".join(stream_members_csv(queryset, ("member_id", "email"), page_size=2))

        self.assertEqual(body.splitlines()[0], "\ufeffmember_id,email")
        self.assertEqual(len(body.splitlines()), 6)
        self.assertIn('"MDPVA2600001","m0@example.com"', body)

    def test_stream_failure_after_first_page_appends_error_marker(self) -> None:
        queryset = export_queryset(ExportRequest(scope=ExportScope.all))
        first_page = list(queryset.values("member_id")[:2])

        def _pages(*args, **kwargs):
            yield first_page
            raise DatabaseError('statement "timeout"')

        with (
            patch("members.member_export.iter_pages", side_effect=_pages),
            self.assertLogs("members.member_export", level="ERROR"),
        ):
            body = "".join(stream_members_csv(queryset, ("member_id",)))

        lines = body.splitlines()
        self.assertEqual(len([line for line in lines if line.startswith('"MDPVA')]), 2)
        self.assertTrue(body.endswith('\n"ERROR","statement ""timeout"""\n'))


class MemberPdfTests(TestCase):
    def test_render_produces_one_page_per_card_grid(self) -> None:
        members = [
            {"member_id": f"MDPVA26{index:05d}", "first_name": "Anil", "last_name": "Rao", "phone": "9845000001"}
            for index in range(CARDS_PER_PAGE + 1)
        ]

        content = render_members_pdf(members, active_count=len(members), fetch_image=lambda url: None)

        self.assertTrue(content.startswith(b"%PDF"))
        self.assertEqual(len(re.findall(rb"/Type\s*/Page(?!s)", content)), 2)

    def test_empty_export_still_renders_a_page(self) -> None:
        content = render_members_pdf([], active_count=0, fetch_image=lambda url: None)

        self.assertTrue(content.startswith(b"%PDF"))

    def test_thumbnails_use_transform_url_and_bad_images_fall_back(self) -> None:
        fetched: list[str] = []

        def _fetch(url: str) -> bytes | None:
            fetched.append(url)
            return _png_bytes() if "good" in url else b"not an image"

        members = [
            {"member_id": "MDPVA2600001", "profile_photo_url": "https://cdn.example.com/storage/v1/object/public/good.png"},
            {"member_id": "MDPVA2600002", "profile_photo_url": "https://cdn.example.com/storage/v1/object/public/bad.png"},
            {"member_id": "MDPVA2600003", "profile_photo_url": None},
        ]

        with self.assertLogs("members.member_export", level="WARNING"):
            content = render_members_pdf(members, active_count=3, fetch_image=_fetch)

        self.assertTrue(content.startswith(b"%PDF"))
        self.assertEqual(len(fetched), 2)
        self.assertIn("/render/image/public/good.png?width=96&quality=70", fetched[0])

    def test_collect_pdf_members_reads_every_page(self) -> None:
        for index in range(3):
            make_member(member_id=f"MDPVA26{index + 1:05d}", email=f"m{index}@example.com", phone=f"98450{index:05d}")

        members = collect_pdf_members(export_queryset(ExportRequest(scope=ExportScope.all)), page_size=2)

        self.assertEqual([member["member_id"] for member in members], ["MDPVA2600003", "MDPVA2600002", "MDPVA2600001"])
