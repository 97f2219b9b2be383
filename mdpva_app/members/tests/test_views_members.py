import io
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import TestCase
from django.urls import reverse
from PIL import Image

from members.models import Member
from members.permissions import (
    MEMBERS_ADD_MEMBER,
    MEMBERS_CHANGE_MEMBER,
    MEMBERS_DELETE_MEMBER,
    MEMBERS_VIEW_MEMBER,
)
from members.pincode_lookup import PincodeLookupResult
from members.tests.utils_test_data import make_member, make_staff_user


class MemberListViewTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(make_staff_user(permissions=(MEMBERS_VIEW_MEMBER,)))
        for index in range(3):
            make_member(
                member_id=f"MDPVA26{index + 1:05d}",
                email=f"m{index}@example.com",
                phone=f"98450{index:05d}",
                profile_photo_url="https://cdn.example.com/storage/v1/object/public/p.jpg" if index == 0 else None,
            )

    def test_list_is_paginated(self) -> None:
        response = self.client.get(reverse("member-list"), {"page": 2, "page_size": 2, "sort": "id_asc"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["total"], 3)
        self.assertEqual(payload["page"], 2)
        self.assertEqual(payload["pageSize"], 2)
        self.assertEqual([member["member_id"] for member in payload["members"]], ["MDPVA2600003"])

    def test_list_includes_thumbnail_url(self) -> None:
        response = self.client.get(reverse("member-list"), {"q": "MDPVA2600001"})

        member = response.json()["members"][0]
        self.assertIn("/render/image/public/p.jpg?width=96&height=96&quality=70&resize=cover", member["thumbnail_url"])
        self.assertTrue(member["created_at"].endswith("Z"))

    def test_invalid_paging_parameters_fall_back_to_defaults(self) -> None:
        payload = self.client.get(reverse("member-list"), {"page": "abc", "page_size": "1000"}).json()

        self.assertEqual(payload["page"], 1)
        self.assertEqual(payload["pageSize"], 100)

    def test_stats(self) -> None:
        Member.objects.filter(member_id="MDPVA2600003").update(status=Member.Status.inactive)

        response = self.client.get(reverse("member-stats"))

        self.assertEqual(response.json(), {"total": 3, "active": 2, "inactive": 1, "newThisMonth": 3})

    def test_list_requires_view_permission(self) -> None:
        self.client.force_login(make_staff_user("nobody"))

        self.assertEqual(self.client.get(reverse("member-list")).status_code, 403)


class MemberMaintenanceViewTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(
            make_staff_user(permissions=(MEMBERS_VIEW_MEMBER, MEMBERS_CHANGE_MEMBER, MEMBERS_DELETE_MEMBER))
        )
        self.member = make_member()

    def test_delete_soft_deletes(self) -> None:
        response = self.client.post(reverse("member-delete", args=[self.member.member_id]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "deleted", "member_id": "MDPVA2600001"})
        self.member.refresh_from_db()
        self.assertIsNotNone(self.member.deleted_at)

        again = self.client.post(reverse("member-delete", args=[self.member.member_id]))
        self.assertEqual(again.status_code, 404)

    def test_restore_undeletes(self) -> None:
        self.member.soft_delete()

        response = self.client.post(reverse("member-restore", args=[self.member.member_id]))

        self.assertEqual(response.status_code, 200)
        self.member.refresh_from_db()
        self.assertIsNone(self.member.deleted_at)

    def test_restore_conflicts_with_active_contact(self) -> None:
        self.member.soft_delete()
        make_member(member_id="MDPVA2600002", email="other@example.com", phone=self.member.phone)

        response = self.client.post(reverse("member-restore", args=[self.member.member_id]))

        self.assertEqual(response.status_code, 409)
        self.assertIn("MDPVA2600002", response.json()["error"])
        self.member.refresh_from_db()
        self.assertIsNotNone(self.member.deleted_at)

    def test_photo_upload(self) -> None:
        buffer = io.BytesIO()
        Image.new("RGB", (4, 4)).save(buffer, format="PNG")
        photo = SimpleUploadedFile("me.png", buffer.getvalue(), content_type="image/png")

        with patch("members.views_members.upload_profile_photo", return_value="/media/profiles/MDPVA2600001.png") as upload_mock:
            response = self.client.post(reverse("member-photo-upload", args=[self.member.member_id]), {"photo": photo})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"url": "/media/profiles/MDPVA2600001.png"})
        self.assertEqual(upload_mock.call_args.args[0], self.member)

    def test_photo_upload_validation_errors(self) -> None:
        url = reverse("member-photo-upload", args=[self.member.member_id])

        missing = self.client.post(url)
        bad = self.client.post(url, {"photo": SimpleUploadedFile("x.png", b"nope", content_type="image/png")})

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json(), {"error": "Missing photo"})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json(), {"error": "Uploaded file is not a valid image."})

    def test_pincode_lookup(self) -> None:
        result = PincodeLookupResult(is_valid=True, city="Mysuru", state="Karnataka", areas=["Mysore H.O"])

        with patch("members.views_members.lookup_pincode", return_value=result) as lookup_mock:
            response = self.client.get(reverse("member-pincode-lookup", args=["570001"]))

        lookup_mock.assert_called_once_with("570001")
        self.assertEqual(response.json(), {"isValid": True, "city": "Mysuru", "state": "Karnataka", "areas": ["Mysore H.O"]})


class MemberCreateUpdateViewTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.client.force_login(
            make_staff_user(permissions=(MEMBERS_VIEW_MEMBER, MEMBERS_ADD_MEMBER, MEMBERS_CHANGE_MEMBER))
        )

    def _create_form(self, **overrides: str) -> dict[str, str]:
        values = {
            "first_name": "Ravi",
            "last_name": "Kumar",
            "email": "Ravi@Example.com",
            "phone": "98450 00002",
            "profession": "videographer",
            "address_line1": "4 Temple Street",
            "pincode": "570002",
            "city": "Mysuru",
            "state": "Karnataka",
        }
        values.update(overrides)
        return values

    def test_create_assigns_member_id_and_defaults_to_active(self) -> None:
        response = self.client.post(reverse("member-create"), self._create_form())

        self.assertEqual(response.status_code, 201)
        payload = response.json()["member"]
        self.assertRegex(payload["member_id"], r"^MDPVA\d{7}$")
        self.assertEqual(payload["email"], "ravi@example.com")
        self.assertEqual(payload["phone"], "9845000002")
        self.assertEqual(payload["status"], "active")
        self.assertTrue(Member.objects.filter(member_id=payload["member_id"]).exists())

    def test_create_reports_validation_issues(self) -> None:
        response = self.client.post(reverse("member-create"), self._create_form(email="not-an-email", last_name=""))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"error": "Invalid member", "issues": ["Missing required: last_name", "Invalid email"]},
        )
        self.assertFalse(Member.objects.exists())

    def test_create_rejects_active_duplicate_contact(self) -> None:
        make_member(phone="9845000002")

        response = self.client.post(reverse("member-create"), self._create_form())

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["fields"], {"phone": "This phone number is already registered"})
        self.assertEqual(Member.objects.count(), 1)

    def test_create_requires_add_permission(self) -> None:
        self.client.force_login(make_staff_user("viewer", permissions=(MEMBERS_VIEW_MEMBER, MEMBERS_CHANGE_MEMBER)))

        self.assertEqual(self.client.post(reverse("member-create"), self._create_form()).status_code, 403)

    def test_update_changes_posted_fields_only(self) -> None:
        member = make_member(notes="Founding member")

        response = self.client.post(reverse("member-update", args=[member.member_id]), {"city": "Mandya"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["member"]["city"], "Mandya")
        member.refresh_from_db()
        self.assertEqual(member.city, "Mandya")
        self.assertEqual(member.notes, "Founding member")
        self.assertEqual(member.member_id, "MDPVA2600001")

    def test_update_rejects_contact_of_another_active_member(self) -> None:
        member = make_member()
        make_member(member_id="MDPVA2600002", email="meena@example.com", phone="9845000002")

        response = self.client.post(reverse("member-update", args=[member.member_id]), {"email": "meena@example.com"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["fields"], {"email": "This email is already registered"})

    def test_update_of_deleted_member_is_not_found(self) -> None:
        member = make_member()
        member.soft_delete()

        response = self.client.post(reverse("member-update", args=[member.member_id]), {"city": "Mandya"})

        self.assertEqual(response.status_code, 404)
