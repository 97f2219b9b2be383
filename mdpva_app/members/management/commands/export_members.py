import logging
from pathlib import Path
from typing import override

from django.core.management.base import BaseCommand, CommandError

from members.member_export import (
    ExportFormat,
    ExportRequest,
    ExportScope,
    active_member_count,
    collect_pdf_members,
    export_queryset,
    render_members_pdf,
    stream_members_csv,
)

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Export every non-deleted member to a CSV or PDF file."

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument("output", help="Destination file path.")
        parser.add_argument("--format", choices=[fmt.value for fmt in ExportFormat], default=ExportFormat.csv.value)
        parser.add_argument(
            "--columns",
            choices=["default", "all"],
            default="default",
            help="'all' adds the profile photo URL and notes columns (CSV only).",
        )

    @override
    def handle(self, *args, **options) -> None:
        export = ExportRequest(
            scope=ExportScope.all,
            format=ExportFormat(options["format"]),
            include_extra_columns=options["columns"] == "all",
        )
        output = Path(options["output"])
        queryset = export_queryset(export)

        try:
            if export.format == ExportFormat.pdf:
                members = collect_pdf_members(queryset)
                output.write_bytes(render_members_pdf(members, active_count=active_member_count()))
                count = len(members)
            else:
                with output.open("w", encoding="utf-8", newline="") as handle:
                    for chunk in stream_members_csv(queryset, export.columns):
                        handle.write(chunk)
                count = queryset.count()
        except OSError as exc:
            raise CommandError(f"Unable to write {output}: {exc}") from exc

        logger.info("Member export command wrote format=%s members=%d path=%s", export.format, count, output)
        self.stdout.write(self.style.SUCCESS(f"Exported {count} member(s) to {output}"))
