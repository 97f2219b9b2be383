from __future__ import annotations

import logging
from typing import override

from django.db import models
from django.db.models import F, Q
from django.utils import timezone

logger = logging.getLogger(__name__)


class MemberQuerySet(models.QuerySet["Member"]):
    def active(self) -> MemberQuerySet:
        """Members that have not been soft-deleted (regardless of status)."""
        return self.filter(deleted_at__isnull=True)

    def deleted(self) -> MemberQuerySet:
        return self.filter(deleted_at__isnull=False)

    def matching_contact(self, *, email: str, phone: str) -> MemberQuerySet:
        # Soft-deleted rows are included so the caller can decide on undelete;
        # active rows sort first.
        condition = Q()
        if email:
            condition |= Q(email=email)
        if phone:
            condition |= Q(phone=phone)
        if not condition:
            return self.none()
        return self.filter(condition).order_by(F("deleted_at").asc(nulls_first=True), "pk")


class Member(models.Model):
    class Profession(models.TextChoices):
        photographer = "photographer", "Photographer"
        videographer = "videographer", "Videographer"
        both = "both", "Both"

    class Status(models.TextChoices):
        active = "active", "Active"
        inactive = "inactive", "Inactive"
        suspended = "suspended", "Suspended"

    class BloodGroup(models.TextChoices):
        a_pos = "A+", "A+"
        a_neg = "A-", "A-"
        b_pos = "B+", "B+"
        b_neg = "B-", "B-"
        ab_pos = "AB+", "AB+"
        ab_neg = "AB-", "AB-"
        o_pos = "O+", "O+"
        o_neg = "O-", "O-"

    member_id = models.CharField(max_length=16, unique=True, editable=False)
    first_name = models.CharField(max_length=255)
    last_name = models.CharField(max_length=255)
    email = models.EmailField(max_length=255)
    phone = models.CharField(max_length=32)
    profession = models.CharField(max_length=16, choices=Profession.choices)
    business_name = models.CharField(max_length=255, blank=True, null=True)
    address_line1 = models.CharField(max_length=255)
    address_line2 = models.CharField(max_length=255, blank=True, null=True)
    area = models.CharField(max_length=255, blank=True, null=True)
    city = models.CharField(max_length=255)
    state = models.CharField(max_length=255)
    pincode = models.CharField(max_length=6)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.active)
    dob = models.DateField(blank=True, null=True)
    blood_group = models.CharField(max_length=3, choices=BloodGroup.choices, blank=True, null=True)
    notes = models.TextField(blank=True, null=True)
    profile_photo_url = models.URLField(max_length=1024, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(blank=True, null=True)

    objects = MemberQuerySet.as_manager()

    class Meta:
        db_table = "members"
        ordering = ("-created_at", "-member_id")
        constraints = [
            models.UniqueConstraint(
                fields=["email"],
                condition=Q(deleted_at__isnull=True),
                name="members_unique_active_email",
            ),
            models.UniqueConstraint(
                fields=["phone"],
                condition=Q(deleted_at__isnull=True),
                name="members_unique_active_phone",
            ),
        ]
        indexes = [
            models.Index(fields=["created_at"], name="members_created_at_idx"),
            models.Index(fields=["last_name", "first_name"], name="members_name_idx"),
        ]

    @override
    def __str__(self) -> str:
        return f"{self.member_id} {self.first_name} {self.last_name}".strip()

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @override
    def save(self, *args, **kwargs) -> None:
        if self.pk is not None and self.member_id:
            stored = Member.objects.filter(pk=self.pk).values_list("member_id", flat=True).first()
            if stored and stored != self.member_id:
                raise ValueError(f"member_id is immutable (stored={stored!r}, new={self.member_id!r})")
        super().save(*args, **kwargs)

    def soft_delete(self) -> None:
        self.deleted_at = timezone.now()
        self.save(update_fields=["deleted_at", "updated_at"])
        logger.info("Member soft-deleted member_id=%s", self.member_id)

    def undelete(self) -> None:
        self.deleted_at = None
        self.save(update_fields=["deleted_at", "updated_at"])
        logger.info("Member restored member_id=%s", self.member_id)


class MemberIdSequence(models.Model):
    """Last issued member-ID counter per calendar year."""

    year = models.PositiveSmallIntegerField(primary_key=True)
    last_value = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "member_id_sequences"

    @override
    def __str__(self) -> str:
        return f"{self.year}: {self.last_value}"
