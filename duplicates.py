"""Possible-duplicate detection for incoming transactions.

A candidate is flagged when an existing transaction of the same user, dated
within one calendar day, has the exact same amount and the same first five
merchant characters (case-insensitive). Shorter names must match in full.
Everything here is pure; callers load the comparison window.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional, Protocol

from periods import parse_day

MERCHANT_PREFIX_LENGTH = 5
WINDOW_DAYS = 1


class LedgerRow(Protocol):
    id: Optional[int]
    amount_cents: int
    merchant: str
    occurred_on: str


@dataclass(frozen=True)
class Candidate:
    amount_cents: int
    merchant: str
    occurred_on: str
    id: Optional[int] = None


def merchant_prefix(merchant: str) -> str:
    return (merchant or "").strip()[:MERCHANT_PREFIX_LENGTH].lower()


def find_duplicate_matches(
    candidate: LedgerRow, existing: Iterable[LedgerRow]
) -> list[LedgerRow]:
    prefix = merchant_prefix(candidate.merchant)
    if not prefix:
        return []
    day = parse_day(candidate.occurred_on)
    window = timedelta(days=WINDOW_DAYS)
    matches: list[LedgerRow] = []
    for row in existing:
        if candidate.id is not None and row.id == candidate.id:
            continue
        if row.amount_cents != candidate.amount_cents:
            continue
        if abs(parse_day(row.occurred_on) - day) > window:
            continue
        if merchant_prefix(row.merchant) != prefix:
            continue
        matches.append(row)
    return matches


def is_possible_duplicate(candidate: LedgerRow, existing: Iterable[LedgerRow]) -> bool:
    return bool(find_duplicate_matches(candidate, existing))
