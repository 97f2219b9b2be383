from typing import override

from django.contrib import admin, messages
from django.db import transaction
from django.db.models import QuerySet
from django.forms import ModelForm
from django.http import HttpRequest

from members.member_ids import next_member_id
from members.models import Member, MemberIdSequence


class DeletedFilter(admin.SimpleListFilter):
    title = "deleted"
    parameter_name = "deleted"

    def lookups(self, request: HttpRequest, model_admin: admin.ModelAdmin) -> list[tuple[str, str]]:
        return [("no", "Not deleted"), ("yes", "Deleted")]

    def queryset(self, request: HttpRequest, queryset: QuerySet[Member]) -> QuerySet[Member]:
        if self.value() == "no":
            return queryset.filter(deleted_at__isnull=True)
        if self.value() == "yes":
            return queryset.filter(deleted_at__isnull=False)
        return queryset


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ("member_id", "first_name", "last_name", "email", "phone", "status", "city", "created_at", "deleted_at")
    list_filter = ("status", "profession", DeletedFilter)
    search_fields = ("member_id", "first_name", "last_name", "email", "phone")
    readonly_fields = ("member_id", "created_at", "updated_at", "deleted_at")
    ordering = ("-created_at", "-member_id")
    actions = ("soft_delete_members", "restore_members")

    @override
    def save_model(self, request: HttpRequest, obj: Member, form: ModelForm, change: bool) -> None:
        if change:
            super().save_model(request, obj, form, change)
            return

        # Allocation and insert share one transaction.
        with transaction.atomic():
            obj.member_id = next_member_id()
            super().save_model(request, obj, form, change)

    @admin.action(description="Soft delete selected members")
    def soft_delete_members(self, request: HttpRequest, queryset: QuerySet[Member]) -> None:
        count = 0
        for member in queryset.filter(deleted_at__isnull=True):
            member.soft_delete()
            count += 1
        self.message_user(request, f"Soft-deleted {count} member(s).", messages.SUCCESS)

    @admin.action(description="Restore selected members")
    def restore_members(self, request: HttpRequest, queryset: QuerySet[Member]) -> None:
        count = 0
        for member in queryset.filter(deleted_at__isnull=False):
            member.undelete()
            count += 1
        self.message_user(request, f"Restored {count} member(s).", messages.SUCCESS)

    @override
    def has_delete_permission(self, request: HttpRequest, obj: Member | None = None) -> bool:
        # Members are soft-deleted so imports can resurrect them.
        return False


@admin.register(MemberIdSequence)
class MemberIdSequenceAdmin(admin.ModelAdmin):
    list_display = ("year", "last_value")
    readonly_fields = ("year",)
