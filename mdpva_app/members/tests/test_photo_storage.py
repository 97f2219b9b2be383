import io
import tempfile
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.core.files.storage import FileSystemStorage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase, TestCase, override_settings
from PIL import Image

from members.photo_storage import profile_photo_path, thumbnail_url, upload_profile_photo
from members.tests.utils_test_data import make_member


def _image_upload(name: str = "me.png", image_format: str = "PNG") -> SimpleUploadedFile:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(10, 120, 200)).save(buffer, format=image_format)
    return SimpleUploadedFile(name, buffer.getvalue(), content_type="image/png")


class ProfilePhotoPathTests(SimpleTestCase):
    def test_profile_photo_path_is_keyed_by_member_id(self) -> None:
        self.assertEqual(profile_photo_path("mdpva2600001", "Portrait.JPG"), "profiles/MDPVA2600001.jpg")
        self.assertEqual(profile_photo_path("MDPVA2600001", ext=".png"), "profiles/MDPVA2600001.png")
        self.assertEqual(profile_photo_path("MDPVA2600001"), "profiles/MDPVA2600001")

    def test_member_id_cannot_escape_the_photo_directory(self) -> None:
        self.assertEqual(profile_photo_path("../../etc/passwd", ext="png"), "profiles/PASSWD.png")

    def test_thumbnail_url_rewrites_public_object_urls(self) -> None:
        url = "https://cdn.example.com/storage/v1/object/public/profiles/MDPVA2600001.jpg?v=2"

        self.assertEqual(
            thumbnail_url(url, width=96, height=96, quality=70, resize="cover"),
            "https://cdn.example.com/storage/v1/render/image/public/profiles/MDPVA2600001.jpg"
            "?v=2&width=96&height=96&quality=70&resize=cover",
        )

    def test_thumbnail_url_leaves_unparseable_or_empty_values(self) -> None:
        self.assertIsNone(thumbnail_url(None))
        self.assertIsNone(thumbnail_url("  "))
        self.assertEqual(thumbnail_url("not a url"), "not a url")
        self.assertEqual(thumbnail_url("http://[broken"), "http://[broken")


class UploadProfilePhotoTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        storage = FileSystemStorage(location=self._tmp.name, base_url="/media/")
        patcher = patch("members.photo_storage.default_storage", storage)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.storage = storage

    def test_upload_saves_image_and_updates_member(self) -> None:
        member = make_member()

        url = upload_profile_photo(member, _image_upload())

        self.assertEqual(url, "/media/profiles/MDPVA2600001.png")
        self.assertTrue(self.storage.exists("profiles/MDPVA2600001.png"))
        member.refresh_from_db()
        self.assertEqual(member.profile_photo_url, url)

    def test_new_upload_overwrites_previous_photo(self) -> None:
        member = make_member()

        upload_profile_photo(member, _image_upload())
        url = upload_profile_photo(member, _image_upload("again.png"))

        self.assertEqual(url, "/media/profiles/MDPVA2600001.png")
        self.assertEqual(self.storage.listdir("profiles")[1], ["MDPVA2600001.png"])

    def test_non_images_are_rejected(self) -> None:
        member = make_member()
        uploaded = SimpleUploadedFile("notes.png", b"definitely not a png", content_type="image/png")

        with self.assertRaisesMessage(ValidationError, "Uploaded file is not a valid image."):
            upload_profile_photo(member, uploaded)

        member.refresh_from_db()
        self.assertIsNone(member.profile_photo_url)

    def test_unsupported_formats_are_rejected(self) -> None:
        with self.assertRaisesMessage(ValidationError, "Unsupported image format."):
            upload_profile_photo(make_member(), _image_upload("me.bmp", image_format="BMP"))

    @override_settings(MEMBER_PHOTO_MAX_BYTES=10)
    def test_oversized_photos_are_rejected(self) -> None:
        with self.assertRaisesMessage(ValidationError, "Photo too large."):
            upload_profile_photo(make_member(), _image_upload())
