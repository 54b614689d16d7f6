"""Best-effort conversion of free model text into one canonical record line.

Everything here is a pure function of its inputs. Strategies are tried in a
fixed priority order and the first that matches wins:

1. error keyword -> ``ERRO``
2. cash receipts (profile opt-in, needs a date hint)
3. labeled fields (``DATA:`` / ``NOME:`` / ``VALOR:``), then ``<date> VENDA <id> <name> <value>``
4. ``<date> <name> <value>``
5. token-by-token manual parse
6. the cleaned text itself
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re

from pydantic import ValidationError

from castor.records import FAILURE_MARKER, ReceiptRecord

NOT_FOUND = "ND"


@dataclass(frozen=True)
class ExtractionProfile:
    """Per-tenant switches for the extractor."""

    name: str
    cash_receipts: bool = False
    assume_cash: bool = False
    annotate_with_file_note: bool = False


PROFILES: dict[str, ExtractionProfile] = {
    p.name: p
    for p in (
        ExtractionProfile("default"),
        ExtractionProfile("cash-receipt", cash_receipts=True),
        ExtractionProfile("annotated", annotate_with_file_note=True),
    )
}


def resolve_profile(profile: str | ExtractionProfile | None) -> ExtractionProfile:
    """Return the profile object for a name; unknown names get ``default``."""
    if isinstance(profile, ExtractionProfile):
        return profile
    return PROFILES.get(profile or "default", PROFILES["default"])


_WS = re.compile(r"\s+")
_ERROR_KEYWORD = re.compile(r"\berro", re.IGNORECASE)
_EXTENSION = re.compile(r"\.[^/.]+$")
_CASH_WORDS = ("dinheiro", "espécie", "especie")

_AMOUNT = r"\d+(?:[.,]\d{3})*(?:[.,]\d{1,2})?"
_EXPLICIT_TOTAL = re.compile(rf"=\s*R\$\s*({_AMOUNT})", re.IGNORECASE)
_MONEY_TOKEN = re.compile(rf"\b({_AMOUNT})\b")
_DATE_SPAN = re.compile(r"\d{1,2}[-/]\d{1,2}")
_DENOMINATION = re.compile(r"(\d+)\s*x\s*R\$\s*(\d+)", re.IGNORECASE)

_LABEL_DATE = re.compile(r"\bDATA\s*:?\s*(\d{1,2})[-/](\d{1,2})", re.IGNORECASE)
_LABEL_NAME = re.compile(
    r"\b(?:NOME|BENEFICI[AÁ]RIO)\s*:?\s*([^\d]+?)\s*(?=\b(?:DATA|VALOR)\b|\d|$)",
    re.IGNORECASE,
)
_LABEL_VALUE = re.compile(rf"\bVALOR\s*:?\s*(?:R\$\s*)?({_AMOUNT})", re.IGNORECASE)
_NAME_PREFIX = re.compile(
    r"^(?:do\s+)?(?:benefici[aá]rio|recebedor|favorecido)\s*:?\s*", re.IGNORECASE
)

_VENDA_LINE = re.compile(
    r"(\d{1,2}[-/]\d{1,2})\s+VENDA\s+(\w+)\s+(.+?)\s+([\d.,]+)$", re.IGNORECASE
)
_SIMPLE_LINE = re.compile(r"(\d{1,2}[-/]\d{1,2})\s+(.+?)\s+([\d.,]+)$")
_VALUE_WORD = re.compile(r"[\d.,]+$")

_FILE_CASH_PREFIX = re.compile(r"^(\d{1,2})[-_/](\d{1,2})\s+VENDA\s+DINHEIRO", re.IGNORECASE)
_FILE_DATE = re.compile(r"(\d{1,2})[-_/](\d{1,2})")
_FILE_NUMBERS = re.compile(r"(\d{1,2})\D{0,3}(\d{1,2})")
_FILE_NOTE = re.compile(r"\(([^)]+)\)")


def normalize_amount(value: str) -> str:
    """Normalize a monetary string to two fraction digits with a decimal comma.

    With both separators present the dot is the thousands separator; with a
    single kind of separator that separator is the decimal point.
    """
    raw = value.strip()
    if "." in raw and "," in raw:
        numeric = raw.replace(".", "").replace(",", ".", 1)
    elif "," in raw:
        numeric = raw.replace(",", ".", 1)
    else:
        numeric = raw

    m = re.match(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)", numeric)
    if m:
        try:
            amount = Decimal(m.group(0)).quantize(Decimal("0.01"), ROUND_HALF_UP)
        except InvalidOperation:
            pass
        else:
            return f"{amount:.2f}".replace(".", ",")

    if "," not in raw:
        return raw + ",00"
    whole, _, frac = raw.partition(",")
    if len(frac) == 1:
        return f"{whole},{frac}0"
    return raw


def _dd_mm(day: int, month: int) -> str:
    return f"{day:02d}-{month:02d}"


def _valid_day_month(day: int, month: int) -> bool:
    return 1 <= day <= 31 and 1 <= month <= 12


def date_hint_from_filename(name: str | None) -> str | None:
    """Best-effort ``DD-MM`` date from a file name, or None."""
    if not name:
        return None
    stem = _EXTENSION.sub("", name)

    m = _FILE_CASH_PREFIX.match(stem)
    if m:
        return _dd_mm(int(m.group(1)), int(m.group(2)))

    m = _FILE_DATE.match(stem)
    if m and _valid_day_month(int(m.group(1)), int(m.group(2))):
        return _dd_mm(int(m.group(1)), int(m.group(2)))

    for m in _FILE_DATE.finditer(stem):
        day, month = int(m.group(1)), int(m.group(2))
        if _valid_day_month(day, month):
            return _dd_mm(day, month)

    m = _FILE_NUMBERS.search(stem)
    if m:
        a, b = int(m.group(1)), int(m.group(2))
        if _valid_day_month(a, b):
            return _dd_mm(a, b)
        if _valid_day_month(b, a):
            return _dd_mm(b, a)
    return None


def note_from_filename(name: str | None) -> str | None:
    """Return the parenthesized note in a file name, e.g. ``x (obra).jpg`` -> ``obra``."""
    if not name:
        return None
    m = _FILE_NOTE.search(_EXTENSION.sub("", name))
    if m and m.group(1).strip():
        return m.group(1).strip()
    return None


def _record(**fields: str | None) -> ReceiptRecord | None:
    try:
        return ReceiptRecord(**fields)
    except ValidationError:
        return None


def _is_cash_context(text: str, profile: ExtractionProfile, file_name: str | None) -> bool:
    if profile.assume_cash:
        return True
    lowered = text.lower()
    if any(word in lowered for word in _CASH_WORDS):
        return True
    return bool(file_name) and "dinheiro" in file_name.lower()


def _cash_amount(text: str) -> str:
    m = _EXPLICIT_TOTAL.search(text)
    if m:
        return normalize_amount(m.group(1))

    excluded = [m.span() for m in _DATE_SPAN.finditer(text)]
    excluded += [m.span() for m in _DENOMINATION.finditer(text)]
    candidates = [
        t.group(1)
        for t in _MONEY_TOKEN.finditer(text)
        if not any(start <= t.start() < end for start, end in excluded)
    ]
    if candidates:
        return normalize_amount(candidates[-1])

    total = sum(int(q) * int(unit) for q, unit in _DENOMINATION.findall(text))
    if total > 0:
        return normalize_amount(str(total))
    return NOT_FOUND


def _labeled(text: str, note: str | None) -> ReceiptRecord | None:
    date_m = _LABEL_DATE.search(text)
    name_m = _LABEL_NAME.search(text)
    value_m = _LABEL_VALUE.search(text)
    if not (date_m and name_m and value_m):
        return None
    name = _NAME_PREFIX.sub("", name_m.group(1).strip()).strip()
    if not name:
        return None
    return _record(
        date=_dd_mm(int(date_m.group(1)), int(date_m.group(2))),
        counterparty=name,
        note=note,
        amount=normalize_amount(value_m.group(1)),
    )


def _simple(date: str, name: str, amount: str, note: str | None) -> ReceiptRecord | None:
    if note and name.endswith(f"({note})"):
        note = None
    return _record(date=date, counterparty=name, note=note, amount=amount)


def _manual(text: str, note: str | None) -> ReceiptRecord | None:
    words = text.split(" ")
    if len(words) < 5:
        return None
    hits = ((i, _DATE_SPAN.search(w)) for i, w in enumerate(words))
    found = next(((i, m) for i, m in hits if m is not None), None)
    if found is None:
        return None
    idx, date_m = found
    date = date_m.group(0)
    rest = words[idx + 1 :]

    # A value at index 0 leaves no name words, which is not a match.
    if rest and rest[0].lower() == "venda" and len(rest) > 1:
        reference, after = rest[1], rest[2:]
        vi = next((i for i, w in enumerate(after) if _VALUE_WORD.search(w)), None)
        if vi:
            return _record(
                date=date,
                kind="VENDA",
                reference=reference,
                counterparty=" ".join(after[:vi]),
                amount=normalize_amount(after[vi]),
            )
        return None

    vi = next((i for i, w in enumerate(rest) if _VALUE_WORD.search(w)), None)
    if vi:
        return _simple(date, " ".join(rest[:vi]), normalize_amount(rest[vi]), note)
    return None


def parse_record(
    raw: str,
    *,
    date_hint: str | None = None,
    profile: str | ExtractionProfile | None = None,
    file_note: str | None = None,
    file_name: str | None = None,
) -> ReceiptRecord | None:
    """Parse *raw* into a ReceiptRecord, or None when no strategy matches.

    ``file_name`` supplies ``date_hint`` and ``file_note`` when they are not
    given explicitly, and marks cash context when it mentions ``dinheiro``.
    """
    prof = resolve_profile(profile)
    text = _WS.sub(" ", raw).strip()
    if file_name:
        date_hint = date_hint or date_hint_from_filename(file_name)
        file_note = file_note or note_from_filename(file_name)
    note = file_note if prof.annotate_with_file_note else None

    if prof.cash_receipts and date_hint and _is_cash_context(text, prof, file_name):
        return _record(
            date=date_hint, kind="VENDA", reference="DINHEIRO", amount=_cash_amount(text)
        )

    record = _labeled(text, note)
    if record is not None:
        return record

    m = _VENDA_LINE.search(text)
    if m:
        record = _record(
            date=m.group(1),
            kind="VENDA",
            reference=m.group(2),
            counterparty=m.group(3),
            amount=normalize_amount(m.group(4)),
        )
        if record is not None:
            return record

    m = _SIMPLE_LINE.search(text)
    if m:
        record = _simple(
            m.group(1), m.group(2).strip(), normalize_amount(m.group(3)), note
        )
        if record is not None:
            return record

    return _manual(text, note)


def extract_record(
    raw: str,
    *,
    date_hint: str | None = None,
    profile: str | ExtractionProfile | None = None,
    file_note: str | None = None,
    file_name: str | None = None,
) -> str:
    """Return the canonical record line for *raw*, ``ERRO`` on failure.

    Idempotent: feeding the output back in yields the same line.

    Example:
        >>> extract_record("DATA: 02-07\\nNOME: ACME LTDA\\nVALOR: 288,00")
        '02-07 ACME LTDA 288,00'
    """
    text = _WS.sub(" ", raw).strip()
    if _ERROR_KEYWORD.search(text):
        return FAILURE_MARKER
    record = parse_record(
        text,
        date_hint=date_hint,
        profile=profile,
        file_note=file_note,
        file_name=file_name,
    )
    if record is not None:
        return record.to_line()
    return text or FAILURE_MARKER
