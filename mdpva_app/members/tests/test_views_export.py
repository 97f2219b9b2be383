import datetime
from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase, override_settings
from django.urls import reverse

from members.models import Member
from members.permissions import MEMBERS_VIEW_MEMBER
from members.tests.utils_test_data import make_member, make_staff_user


def _streamed(response) -> str:
    return b"".join(response.streaming_content).decode("utf-8")


class MemberExportViewTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        cache.clear()
        self.client.force_login(make_staff_user(permissions=(MEMBERS_VIEW_MEMBER,)))

    def test_requires_view_permission(self) -> None:
        self.client.force_login(make_staff_user("nobody"))

        response = self.client.get(reverse("member-export"))

        self.assertEqual(response.status_code, 403)

    def test_csv_export_streams_bom_header_and_rows(self) -> None:
        make_member(member_id="MDPVA2600001", first_name='Anil "AJ"', notes="=HYPERLINK()")

        response = self.client.get(reverse("member-export"), {"scope": "all"}, REMOTE_ADDR="198.51.100.1")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.streaming)
        self.assertEqual(response["Content-Type"], "text/csv; charset=utf-8")
        self.assertEqual(response["Cache-Control"], "no-store")
        self.assertRegex(
            response["Content-Disposition"],
            r'^attachment; filename="mdpva-members-all-\d{8}-\d{4}-1\.csv"$',
        )

        body = _streamed(response)
        self.assertTrue(body.startswith("\ufeffmember_id,first_name,last_name,status,email,phone,"))
        lines = body.lstrip("\ufeff").splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith('"MDPVA2600001","Anil ""AJ""","Rao","active"'))
        self.assertNotIn("HYPERLINK", body)

    def test_all_columns_add_photo_url_and_escaped_notes(self) -> None:
        make_member(notes="=HYPERLINK()")

        response = self.client.get(reverse("member-export"), {"scope": "all", "columns": "all"})

        body = _streamed(response)
        header = body.lstrip("\ufeff").splitlines()[0]
        self.assertTrue(header.endswith(",created_at,updated_at,profile_photo_url,notes"))
        self.assertIn("\"'=HYPERLINK()\"", body)

    def test_current_scope_filters_active_and_sorts_by_name(self) -> None:
        make_member(member_id="MDPVA2600001", first_name="Zed", last_name="Bhat", email="a@example.com", phone="9845000001")
        make_member(member_id="MDPVA2600002", first_name="Asha", last_name="Bhat", email="b@example.com", phone="9845000002")
        make_member(member_id="MDPVA2600003", last_name="Achar", email="c@example.com", phone="9845000003")
        make_member(
            member_id="MDPVA2600004",
            last_name="Aaron",
            email="d@example.com",
            phone="9845000004",
            status=Member.Status.inactive,
        )
        make_member(member_id="MDPVA2600005", last_name="Aa", email="e@example.com", phone="9845000005").soft_delete()

        response = self.client.get(
            reverse("member-export"),
            {"scope": "current", "filter": "active", "sort": "name_asc"},
        )

        rows = _streamed(response).lstrip("\ufeff").splitlines()[1:]
        self.assertEqual([row.split(",")[0] for row in rows], ['"MDPVA2600003"', '"MDPVA2600002"', '"MDPVA2600001"'])
        self.assertTrue(all(row.split(",")[3] == '"active"' for row in rows))

    def test_timestamps_are_iso_8601_utc(self) -> None:
        member = make_member()
        Member.objects.filter(pk=member.pk).update(
            created_at=datetime.datetime(2026, 1, 2, 3, 4, 5, 678000, tzinfo=datetime.UTC),
        )

        body = _streamed(self.client.get(reverse("member-export"), {"scope": "all"}))

        self.assertIn('"2026-01-02T03:04:05.678Z"', body)

    def test_unsupported_format_is_rejected(self) -> None:
        response = self.client.get(reverse("member-export"), {"format": "xlsx"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.content, b"Unsupported format.")

    def test_pdf_export_returns_document(self) -> None:
        make_member()

        with patch("members.member_export.fetch_thumbnail", return_value=None):
            response = self.client.get(reverse("member-export"), {"format": "pdf", "scope": "all"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "application/pdf")
        self.assertTrue(response.content.startswith(b"%PDF"))
        self.assertRegex(response["Content-Disposition"], r'filename="mdpva-members-all-\d{8}-\d{4}\.pdf"$')

    def test_pdf_failure_returns_500(self) -> None:
        with (
            patch("members.views_export.render_members_pdf", side_effect=RuntimeError("font missing")),
            self.assertLogs("members.views_export", level="ERROR"),
        ):
            response = self.client.get(reverse("member-export"), {"format": "pdf"})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.content, b"Failed to export members.")

    @override_settings(MEMBER_EXPORT_RATE_LIMIT_LIMIT=3, MEMBER_EXPORT_RATE_LIMIT_WINDOW_SECONDS=60)
    def test_fourth_request_in_a_minute_is_rate_limited(self) -> None:
        statuses = [
            self.client.get(reverse("member-export"), REMOTE_ADDR="198.51.100.7").status_code
            for _ in range(3)
        ]

        with patch("members.views_export.logger.warning") as warning_mock:
            response = self.client.get(reverse("member-export"), REMOTE_ADDR="198.51.100.7")

        self.assertEqual(statuses, [200, 200, 200])
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.content.decode(), "Rate limit exceeded. Please try again in a minute.")

        warning_mock.assert_called_once()
        log_extra = warning_mock.call_args.kwargs["extra"]
        self.assertEqual(log_extra["event"], "mdpva.security.rate_limit.denied")
        self.assertEqual(log_extra["component"], "members")
        self.assertEqual(log_extra["outcome"], "denied")
        self.assertEqual(log_extra["limit"], 3)
        self.assertIn("ip_hash", log_extra)
        self.assertNotIn("198.51.100.7", str(log_extra))

        other_client = self.client.get(reverse("member-export"), REMOTE_ADDR="198.51.100.8")
        self.assertEqual(other_client.status_code, 200)

    def test_rate_limit_key_ignores_x_forwarded_for(self) -> None:
        with patch("members.views_export.RateLimiter.allow", return_value=False) as allow_mock:
            response = self.client.get(
                reverse("member-export"),
                REMOTE_ADDR="198.51.100.99",
                HTTP_X_FORWARDED_FOR="203.0.113.7, 198.51.100.99",
            )

        self.assertEqual(response.status_code, 429)
        allow_mock.assert_called_once_with("198.51.100.99")

    def test_filename_uses_export_time_zone(self) -> None:
        fixed_now = datetime.datetime(2026, 3, 31, 20, 0, tzinfo=datetime.UTC)

        with patch("members.views_export.timezone.now", return_value=fixed_now):
            response = self.client.get(reverse("member-export"))

        self.assertEqual(
            response["Content-Disposition"],
            'attachment; filename="mdpva-members-current-20260401-0130-0.csv"',
        )
