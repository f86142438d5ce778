import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Sequence

from models import SUPPORTED_CURRENCIES, TransactionType

# Lower-cased substrings matched against lower-cased header tokens. The first
# header that contains any keyword of a role is used for that role.
HEADER_KEYWORDS: dict[str, tuple[str, ...]] = {
    "amount": ("amount", "value", "sum", "beløp"),
    "description": ("description", "note", "memo", "text", "tekst"),
    "date": ("date", "time", "dato"),
    "type": ("type", "category", "kategori"),
    "currency": ("currency", "valuta"),
    "original_amount": ("originalt beløp",),
    "main_category": ("hovedkategori",),
    "sub_category": ("underkategori",),
}

# Positions used when no header matches a required role.
POSITIONAL_DEFAULTS: dict[str, int] = {"amount": 0, "description": 1, "date": 2}

TYPE_KEYWORDS: tuple[tuple[TransactionType, tuple[str, ...]], ...] = (
    (TransactionType.income, ("income", "credit", "deposit")),
    (TransactionType.expense, ("expense", "debit", "withdrawal")),
)

DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%d.%m.%Y",
    "%d.%m.%y",
    "%m/%d/%Y",
    "%Y/%m/%d",
    "%d-%m-%Y",
    "%d %b %Y",
    "%b %d, %Y",
    "%b %d %Y",
)

MIN_ROW_FIELDS = 3
DEFAULT_DESCRIPTION = "Imported transaction"

_AMOUNT_STRIP = re.compile(r"[^\d.\-]")
_LEADING_NUMBER = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")


@dataclass(frozen=True)
class ColumnMapping:
    amount: int
    description: int
    date: int
    type: Optional[int] = None
    currency: Optional[int] = None
    original_amount: Optional[int] = None
    main_category: Optional[int] = None
    sub_category: Optional[int] = None

    def as_dict(self) -> dict[str, Optional[int]]:
        return {role: getattr(self, role) for role in HEADER_KEYWORDS}


@dataclass(frozen=True)
class CSVRecord:
    row_number: int
    values: list[str]


@dataclass(frozen=True)
class CSVTable:
    headers: list[str]
    delimiter: str
    rows: list[CSVRecord]

    @property
    def header_tokens(self) -> list[str]:
        return [h.lower() for h in self.headers]


@dataclass
class CSVCandidate:
    row_number: int
    amount_cents: int
    type: TransactionType
    description: str
    date: date
    currency: str
    tags: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, object]:
        return {
            "amount": format_amount(self.amount_cents),
            "currency": self.currency,
            "type": self.type.value,
            "description": self.description,
            "date": self.date.isoformat(),
            "tags": list(self.tags),
        }


@dataclass
class CSVParseResult:
    delimiter: str
    headers: list[str]
    mapping: ColumnMapping
    candidates: list[CSVCandidate]
    errors: list[str]
    warnings: list[str]


def detect_delimiter(first_line: str) -> str:
    return ";" if ";" in first_line else ","


def split_csv_line(line: str, delimiter: str = ",") -> list[str]:
    """Split one physical line on ``delimiter`` outside quotes.

    Any ``"`` toggles quoting and is dropped, wherever it sits in the field;
    ``""`` inside quotes is a literal quote. Fields are trimmed.
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    while i < len(line):
        char = line[i]
        if char == '"':
            if in_quotes and line[i + 1 : i + 2] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    fields.append("".join(current).strip())
    return fields


def parse_csv_table(content: str, *, max_rows: Optional[int] = None) -> CSVTable:
    lines = [line.rstrip("\r") for line in content.lstrip("\ufeff").split("\n")]
    if not lines or not lines[0].strip():
        raise ValueError("CSV file is empty")

    delimiter = detect_delimiter(lines[0])
    headers = split_csv_line(lines[0], delimiter)
    rows: list[CSVRecord] = []
    for row_number, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        rows.append(CSVRecord(row_number, split_csv_line(line, delimiter)))
        if max_rows is not None and len(rows) > max_rows:
            raise ValueError(f"CSV file has too many rows (max {max_rows})")
    return CSVTable(headers=headers, delimiter=delimiter, rows=rows)


def resolve_columns(header_tokens: Sequence[str]) -> ColumnMapping:
    lowered = [token.strip().lower() for token in header_tokens]
    found: dict[str, Optional[int]] = {}
    for role, keywords in HEADER_KEYWORDS.items():
        found[role] = next(
            (
                idx
                for idx, token in enumerate(lowered)
                if any(keyword in token for keyword in keywords)
            ),
            None,
        )
    for role, position in POSITIONAL_DEFAULTS.items():
        if found[role] is None:
            found[role] = position
    return ColumnMapping(**found)


def parse_amount(value: str) -> int:
    """Parse a bank amount into absolute cents.

    Everything but digits, ``.`` and ``-`` is dropped and the leading decimal
    number is used, so ``"$1,234.50"`` and ``"-1234.5 NOK"`` both give 123450.
    A value with no such characters at all (``"n/a"``, empty) counts as zero;
    leftovers that are not a number (``"-"``, ``"."``) are rejected.
    """
    clean = _AMOUNT_STRIP.sub("", value or "") or "0"
    match = _LEADING_NUMBER.match(clean)
    if not match:
        raise ValueError("Invalid amount")
    return amount_to_cents(Decimal(match.group(0)))


def amount_to_cents(amount: Decimal) -> int:
    try:
        cents = (abs(Decimal(amount)) * 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    return int(cents)


def format_amount(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


def parse_date(value: str) -> date:
    value = value.strip()
    if not value:
        raise ValueError("Missing date")
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value}")


def classify_type(value: str) -> TransactionType:
    lowered = value.lower()
    for txn_type, keywords in TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return txn_type
    return TransactionType.expense


def _field(values: Sequence[str], index: Optional[int]) -> str:
    if index is None or index >= len(values):
        return ""
    return values[index]


def normalize_row(
    record: CSVRecord,
    mapping: ColumnMapping,
    *,
    default_currency: str,
    today: date,
) -> tuple[Optional[CSVCandidate], Optional[str], list[str]]:
    """Return ``(candidate, error, warnings)`` for one data row."""
    values = record.values
    row = record.row_number
    warnings: list[str] = []

    raw_amount = _field(values, mapping.amount)
    original_amount = _field(values, mapping.original_amount)
    if original_amount:
        raw_amount = original_amount
    try:
        amount_cents = parse_amount(raw_amount)
    except ValueError:
        return None, f'Row {row}: Invalid amount "{raw_amount}"', warnings

    description = _field(values, mapping.description)
    if mapping.main_category is not None and mapping.sub_category is not None:
        main = _field(values, mapping.main_category)
        sub = _field(values, mapping.sub_category)
        if main and sub:
            description = f"{description} ({main} - {sub})"
        elif main:
            description = f"{description} ({main})"
    description = description.strip() or DEFAULT_DESCRIPTION

    raw_date = _field(values, mapping.date)
    try:
        txn_date = parse_date(raw_date)
    except ValueError:
        txn_date = today
        warnings.append(
            f'Row {row}: Invalid date "{raw_date}", using {today.isoformat()}'
        )

    currency = default_currency
    raw_currency = _field(values, mapping.currency)
    if raw_currency:
        if raw_currency.upper() in SUPPORTED_CURRENCIES:
            currency = raw_currency.upper()
        else:
            warnings.append(
                f'Row {row}: Invalid currency "{raw_currency}", using {default_currency}'
            )

    txn_type = TransactionType.expense
    if mapping.type is not None:
        txn_type = classify_type(_field(values, mapping.type))

    candidate = CSVCandidate(
        row_number=row,
        amount_cents=amount_cents,
        type=txn_type,
        description=description,
        date=txn_date,
        currency=currency,
    )
    return candidate, None, warnings


def parse_csv(
    content: str,
    *,
    default_currency: str = "USD",
    max_rows: Optional[int] = None,
    today: Optional[date] = None,
) -> CSVParseResult:
    today = today or date.today()
    default_currency = default_currency.upper()
    table = parse_csv_table(content, max_rows=max_rows)
    mapping = resolve_columns(table.header_tokens)

    candidates: list[CSVCandidate] = []
    errors: list[str] = []
    warnings: list[str] = []
    for record in table.rows:
        if len(record.values) < MIN_ROW_FIELDS:
            errors.append(f"Row {record.row_number}: Insufficient data")
            continue
        candidate, error, row_warnings = normalize_row(
            record, mapping, default_currency=default_currency, today=today
        )
        warnings.extend(row_warnings)
        if error:
            errors.append(error)
            continue
        candidates.append(candidate)

    return CSVParseResult(
        delimiter=table.delimiter,
        headers=table.headers,
        mapping=mapping,
        candidates=candidates,
        errors=errors,
        warnings=warnings,
    )
