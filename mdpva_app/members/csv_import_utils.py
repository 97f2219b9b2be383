import datetime
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import override

from dateutil import parser

from members.views_utils import _normalize_str

IGNORE_COLUMN = "ignore"

# Order matters: it is the order mapping choices are offered in.
MEMBER_TARGET_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "profession",
    "business_name",
    "address_line1",
    "address_line2",
    "pincode",
    "area",
    "city",
    "state",
    "status",
    "dob",
    "blood_group",
    "notes",
)

MEMBER_REQUIRED_FIELDS: tuple[str, ...] = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "profession",
    "address_line1",
    "pincode",
    "city",
    "state",
    "status",
)

_HEADER_SYNONYMS: dict[str, str] = {
    "firstname": "first_name",
    "first-name": "first_name",
    "given_name": "first_name",
    "lastname": "last_name",
    "last-name": "last_name",
    "surname": "last_name",
    "e-mail": "email",
    "email_address": "email",
    "mobile": "phone",
    "mobile_number": "phone",
    "phone_number": "phone",
    "contact": "phone",
    "business": "business_name",
    "company": "business_name",
    "studio": "business_name",
    "addr1": "address_line1",
    "address1": "address_line1",
    "address": "address_line1",
    "addr2": "address_line2",
    "address2": "address_line2",
    "pin": "pincode",
    "pin_code": "pincode",
    "postalcode": "pincode",
    "postal_code": "pincode",
    "postcode": "pincode",
    "locality": "area",
    "town": "city",
    "date_of_birth": "dob",
    "birth_date": "dob",
    "bloodgroup": "blood_group",
    "blood": "blood_group",
    "remarks": "notes",
    "comments": "notes",
}

_DOB_PATTERN = re.compile(r"^(0?[1-9]|[12][0-9]|3[01])/(0?[1-9]|1[0-2])/(19|20)\d{2}$")
_PHONE_STRIP_PATTERN = re.compile(r"[\s()-]")
_FORMULA_PREFIXES: tuple[str, ...] = ("=", "+", "-", "@")


class CSVParseError(ValueError):
    pass


class MalformedRowError(CSVParseError):
    def __init__(self, row_number: int) -> None:
        super().__init__(f"Unterminated quoted field starting in row {row_number}")
        self.row_number = row_number


def tokenize_csv(text: str, *, strict: bool = False) -> list[list[str]]:
    """Split CSV text into rows of raw (untrimmed) fields.

    Quoted fields may contain commas, newlines and doubled quotes. Carriage
    returns outside quotes are dropped so CRLF and LF files parse alike.
    Trailing rows made only of empty fields are discarded.

    An unterminated quote swallows the rest of the input into one field; with
    `strict=True` it raises MalformedRowError instead.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    rows: list[list[str]] = []
    row: list[str] = []
    cell: list[str] = []
    in_quotes = False
    quote_row = 0
    i = 0
    length = len(text)

    while i < length:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < length and text[i + 1] == '"':
                    cell.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                cell.append(ch)
        elif ch == '"':
            in_quotes = True
            quote_row = len(rows) + 1
        elif ch == ",":
            row.append("".join(cell))
            cell = []
        elif ch == "\n":
            row.append("".join(cell))
            rows.append(row)
            row = []
            cell = []
        elif ch != "\r":
            cell.append(ch)
        i += 1

    if in_quotes and strict:
        raise MalformedRowError(quote_row)

    row.append("".join(cell))
    if len(row) > 1 or row[0] != "":
        rows.append(row)

    while rows and all(value == "" for value in rows[-1]):
        rows.pop()

    return rows


def norm_csv_header(value: str) -> str:
    return re.sub(r"\s+", "_", _normalize_str(value).lower())


def suggest_column_mapping(headers: Sequence[str]) -> dict[str, str]:
    suggestions: dict[str, str] = {}
    for header in headers:
        normalized = norm_csv_header(header)
        if normalized in MEMBER_TARGET_FIELDS:
            suggestions[header] = normalized
        else:
            suggestions[header] = _HEADER_SYNONYMS.get(normalized, IGNORE_COLUMN)
    return suggestions


def missing_required_headers(headers: Sequence[str]) -> list[str]:
    present = {norm_csv_header(header) for header in headers}
    return [field_name for field_name in MEMBER_REQUIRED_FIELDS if field_name not in present]


def missing_required_mapping(mapping: Mapping[str, str]) -> list[str]:
    mapped = set(mapping.values())
    return [field_name for field_name in MEMBER_REQUIRED_FIELDS if field_name not in mapped]


@dataclass(frozen=True)
class MemberRecord(Mapping[str, str]):
    """One mapped CSV row: a trimmed value per target field.

    Columns mapped to `ignore` (or not mapped at all) are kept in `extras`,
    keyed by their original header. Reads like a mapping of the target fields.
    """

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    profession: str = ""
    business_name: str = ""
    address_line1: str = ""
    address_line2: str = ""
    pincode: str = ""
    area: str = ""
    city: str = ""
    state: str = ""
    status: str = ""
    dob: str = ""
    blood_group: str = ""
    notes: str = ""
    extras: dict[str, str] = field(default_factory=dict, compare=False)

    @override
    def __getitem__(self, key: str) -> str:
        if key not in MEMBER_TARGET_FIELDS:
            raise KeyError(key)
        return getattr(self, key)

    @override
    def __iter__(self) -> Iterator[str]:
        return iter(MEMBER_TARGET_FIELDS)

    @override
    def __len__(self) -> int:
        return len(MEMBER_TARGET_FIELDS)


def map_csv_rows(
    headers: Sequence[str],
    data_rows: Sequence[Sequence[str]],
    mapping: Mapping[str, str],
) -> Iterator[MemberRecord]:
    """Project raw rows onto target fields; unmapped or ignored columns go to `extras`."""
    columns: list[tuple[int, str]] = []
    extra_columns: list[tuple[int, str]] = []
    for index, header in enumerate(headers):
        target = mapping.get(header) or IGNORE_COLUMN
        if target == IGNORE_COLUMN or target not in MEMBER_TARGET_FIELDS:
            extra_columns.append((index, header))
        else:
            columns.append((index, target))

    for raw in data_rows:
        values: dict[str, str] = {}
        for index, target in columns:
            values[target] = _normalize_str(raw[index] if index < len(raw) else "")
        extras = {
            header: _normalize_str(raw[index] if index < len(raw) else "")
            for index, header in extra_columns
        }
        yield MemberRecord(**values, extras=extras)


def sanitize_csv_cell(value: str) -> str:
    """Prefix formula-starting characters to prevent spreadsheet formula injection."""
    if value and value.startswith(_FORMULA_PREFIXES):
        return f"'{value}"
    return value


def csv_escape(value: object) -> str:
    """Quote one outgoing CSV cell; None becomes an empty, unquoted cell."""
    if value is None:
        return ""
    text = sanitize_csv_cell(str(value))
    return '"' + text.replace('"', '""') + '"'


def normalize_csv_email(value: object) -> str:
    return _normalize_str(value).lower()


def normalize_csv_phone(value: object) -> str:
    return _PHONE_STRIP_PATTERN.sub("", _normalize_str(value))


def is_dob_format(value: str) -> bool:
    return bool(_DOB_PATTERN.match(value))


def parse_csv_dob(value: object) -> datetime.date | None:
    """Parse a dd/mm/yyyy date; returns None for anything else, including impossible dates."""
    raw = _normalize_str(value)
    if not raw or not is_dob_format(raw):
        return None

    try:
        parsed = parser.parse(raw, dayfirst=True, yearfirst=False)
    except (parser.ParserError, TypeError, ValueError, OverflowError):
        return None

    return parsed.date()
