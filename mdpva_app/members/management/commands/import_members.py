import json
import logging
from pathlib import Path
from typing import override

from django.core.management.base import BaseCommand, CommandError

from members.csv_import_utils import missing_required_mapping, suggest_column_mapping
from members.member_csv_import import (
    DuplicatePolicy,
    MemberImportInputError,
    apply_member_csv,
    dry_run_report,
    parse_column_mapping,
    parse_member_csv,
)

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Import members from a CSV file. Columns are mapped with the same suggestions "
        "the import screen offers unless --mapping is given."
    )

    @override
    def add_arguments(self, parser) -> None:
        parser.add_argument("csv_path", help="Path to a UTF-8 CSV file with a header row.")
        parser.add_argument(
            "--policy",
            choices=[policy.value for policy in DuplicatePolicy],
            default=DuplicatePolicy.skip.value,
            help="What to do with rows matching an existing member by email or phone.",
        )
        parser.add_argument(
            "--mapping",
            default="",
            help='JSON object mapping CSV headers to member fields, e.g. {"Mobile": "phone"}.',
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Validate the file and report duplicates without writing anything.",
        )

    @override
    def handle(self, *args, **options) -> None:
        path = Path(options["csv_path"])
        dry_run: bool = bool(options.get("dry_run"))
        policy = DuplicatePolicy(options["policy"])

        try:
            text = path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError) as exc:
            raise CommandError(f"Unable to read {path}: {exc}") from exc

        try:
            upload = parse_member_csv(text, file_name=path.name)
            mapping = parse_column_mapping(options.get("mapping"))
        except MemberImportInputError as exc:
            raise CommandError(exc.message) from exc

        if not mapping:
            mapping = suggest_column_mapping(upload.headers)

        missing = missing_required_mapping(mapping)
        if missing:
            self.stderr.write(self.style.WARNING(f"Required fields without a column: {', '.join(missing)}"))

        if dry_run:
            report = dry_run_report(upload, mapping)
            self.stdout.write(json.dumps(report["summary"]))
            for error in report["errors"]:
                self.stdout.write(f"row {error['row']}: {'; '.join(error['issues'])}")
            return

        result = apply_member_csv(upload, mapping, duplicate_policy=policy)
        logger.info("Member import command applied path=%s policy=%s summary=%s", path, policy, result["summary"])
        for outcome in result["results"]:
            if outcome["status"] == "failed":
                self.stderr.write(f"row {outcome['row']}: {outcome.get('reason', '')}")
        self.stdout.write(self.style.SUCCESS(json.dumps(result["summary"])))
