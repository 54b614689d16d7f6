"""Canonical receipt record: the typed form of one output line."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

FAILURE_MARKER = "ERRO"


class ReceiptRecord(BaseModel):
    """One extracted transaction.

    Rendered by ``to_line()`` as ``DD-MM [VENDA <ref>] <name> [(<note>)] <amount>``.
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    date: str = Field(pattern=r"^\d{2}-\d{2}$")
    amount: str = Field(min_length=1)
    counterparty: str | None = None
    kind: str | None = None
    reference: str | None = None
    note: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _pad_date(cls, v: object) -> object:
        """Accept ``D/M``-style dates and pad them to ``DD-MM``."""
        if isinstance(v, str):
            parts = v.strip().replace("/", "-").split("-")
            if len(parts) == 2 and all(p.isdigit() for p in parts):
                return f"{int(parts[0]):02d}-{int(parts[1]):02d}"
        return v

    @field_validator("kind", mode="before")
    @classmethod
    def _upper_kind(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    def to_line(self) -> str:
        """Render the canonical single-line form."""
        parts = [self.date]
        if self.kind:
            parts.append(self.kind)
            if self.reference:
                parts.append(self.reference)
        if self.counterparty:
            parts.append(self.counterparty)
        if self.note:
            parts.append(f"({self.note})")
        parts.append(self.amount)
        return " ".join(parts)
