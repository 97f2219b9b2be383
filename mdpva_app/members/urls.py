from django.urls import path

from members import views_export, views_import, views_members

urlpatterns = [
    path("", views_members.member_list, name="member-list"),
    path("stats/", views_members.member_stats_view, name="member-stats"),
    path("create/", views_members.member_create, name="member-create"),
    path("import/", views_import.member_import, name="member-import"),
    path("export/", views_export.member_export, name="member-export"),
    path("pincode/<str:pincode>/", views_members.pincode_lookup, name="member-pincode-lookup"),
    path("<str:member_id>/update/", views_members.member_update, name="member-update"),
    path("<str:member_id>/delete/", views_members.member_delete, name="member-delete"),
    path("<str:member_id>/restore/", views_members.member_restore, name="member-restore"),
    path("<str:member_id>/photo/", views_members.member_photo_upload, name="member-photo-upload"),
]
