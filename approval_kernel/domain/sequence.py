"""
Document numbering rules (``approval_kernel.domain.sequence``).

Document numbers look like ``WFMT-MAF-260209-001``: a configured prefix,
the sequence type, the YYMMDD allocation date and a counter padded to at
least three digits (counters past 999 simply grow wider).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

COUNTER_WIDTH = 3


@dataclass(frozen=True)
class AllocatedSequence:
    sequence_type: str
    sequence_date: str
    counter: int
    padded: str
    number: str


@dataclass(frozen=True)
class SequenceCounterInfo:
    sequence_type: str
    sequence_date: str
    current_counter: int


def date_key(value: date | datetime | str) -> str:
    """Normalize a date (or ISO ``YYYY-MM-DD`` string, or YYMMDD) to YYMMDD."""
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.strftime("%y%m%d")
    text = str(value).strip()
    if len(text) == 6 and text.isdigit():
        return text
    return date.fromisoformat(text).strftime("%y%m%d")


def pad_counter(counter: int) -> str:
    return f"{counter:0{COUNTER_WIDTH}d}"


def format_sequence_number(prefix: str, sequence_type: str, sequence_date: str, counter: int) -> str:
    return f"{prefix}-{sequence_type}-{sequence_date}-{pad_counter(counter)}"
