from __future__ import annotations

import logging
import os
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import UploadedFile
from PIL import Image, UnidentifiedImageError

from members.models import Member
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

_ALLOWED_IMAGE_FORMATS: dict[str, str] = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}


def profile_photo_path(member_id: str, filename: str | None = None, ext: str | None = None) -> str:
    """Return the storage key for a member's profile photo.

    Keys are derived from the member ID so a new upload overwrites the old photo.
    """
    resolved_ext = _normalize_str(ext).lower().lstrip(".")
    if not resolved_ext and filename:
        _, file_ext = os.path.splitext(str(filename))
        resolved_ext = file_ext.lstrip(".").lower()

    basename = _normalize_str(member_id).upper()
    if resolved_ext:
        basename = f"{basename}.{resolved_ext}"

    base_dir = str(settings.MEMBER_PHOTO_STORAGE_DIR or "profiles").strip("/")
    return os.path.join(base_dir, os.path.basename(basename))


def _validated_image_ext(uploaded: UploadedFile) -> str:
    max_bytes = int(settings.MEMBER_PHOTO_MAX_BYTES)
    if int(uploaded.size or 0) > max_bytes:
        raise ValidationError(f"Photo too large. Max {max_bytes // (1024 * 1024)}MB.")

    uploaded.seek(0)
    try:
        with Image.open(uploaded) as image:
            image.verify()
            image_format = str(image.format or "").upper()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError("Uploaded file is not a valid image.") from exc
    finally:
        uploaded.seek(0)

    ext = _ALLOWED_IMAGE_FORMATS.get(image_format)
    if ext is None:
        raise ValidationError("Unsupported image format.")
    return ext


def upload_profile_photo(member: Member, uploaded: UploadedFile) -> str:
    """Store the photo, point the member at its public URL and return that URL."""
    ext = _validated_image_ext(uploaded)
    path = profile_photo_path(member.member_id, ext=ext)

    if default_storage.exists(path):
        default_storage.delete(path)
    saved_path = default_storage.save(path, uploaded)
    url = default_storage.url(saved_path)

    member.profile_photo_url = url
    member.save(update_fields=["profile_photo_url", "updated_at"])
    logger.info("Profile photo stored member_id=%s path=%s", member.member_id, saved_path)
    return url


def thumbnail_url(
    url: str | None,
    *,
    width: int = 96,
    height: int | None = None,
    quality: int = 70,
    resize: str | None = None,
) -> str | None:
    """Rewrite a public object URL into the storage's image-transform URL."""
    raw = _normalize_str(url)
    if not raw:
        return None

    try:
        parts = urlsplit(raw)
    except ValueError:
        return raw
    if not parts.scheme or not parts.netloc:
        return raw

    path = parts.path.replace("/object/public/", "/render/image/public/")
    params = dict(parse_qsl(parts.query))
    params["width"] = str(width)
    if height:
        params["height"] = str(height)
    params["quality"] = str(quality)
    if resize:
        params["resize"] = resize
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(params), parts.fragment))
