from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import Direction, Origin, Transaction
from periods import day_window, parse_day

EDITABLE_FIELDS = (
    "amount_cents",
    "direction",
    "category",
    "subcategory",
    "merchant",
    "account",
    "occurred_on",
    "notes",
)


@dataclass
class TransactionFilters:
    direction: Optional[Direction] = None
    category: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    query: Optional[str] = None
    possible_duplicate: Optional[bool] = None
    origin: Optional[Origin] = None


@dataclass(frozen=True)
class LedgerEntry:
    """The parts of a transaction that feed the budget aggregates."""

    amount_cents: int
    direction: Direction
    category: str
    occurred_on: str

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            amount_cents=txn.amount_cents,
            direction=Direction(txn.direction),
            category=txn.category,
            occurred_on=txn.occurred_on,
        )

    @property
    def month(self) -> str:
        return self.occurred_on[:7]


def _validate_amount(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("Amount must be an integer number of cents")
    if value <= 0:
        raise ValidationError("Amount must be positive")
    return value


def _validate_direction(value: Any) -> Direction:
    try:
        return Direction(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown direction '{value}'") from exc


def _validate_day(value: Any) -> str:
    try:
        parse_day(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return value


def _validate_label(value: Any, field: str) -> str:
    clean = (value or "").strip() if isinstance(value, str) else ""
    if not clean:
        raise ValidationError(f"{field.capitalize()} cannot be empty")
    return clean


class LedgerStore:
    """Owner-scoped reads and writes of transaction rows.

    Never commits; the calling service owns the database transaction.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def validate(self, values: dict[str, Any]) -> dict[str, Any]:
        clean = dict(values)
        if "amount_cents" in clean:
            clean["amount_cents"] = _validate_amount(clean["amount_cents"])
        if "direction" in clean:
            clean["direction"] = _validate_direction(clean["direction"])
        if "occurred_on" in clean:
            clean["occurred_on"] = _validate_day(clean["occurred_on"])
        for field in ("category", "merchant", "account"):
            if field in clean:
                clean[field] = _validate_label(clean[field], field)
        return clean

    def validate_new(self, values: dict[str, Any]) -> dict[str, Any]:
        missing = [
            field
            for field in ("amount_cents", "direction", "category", "merchant", "occurred_on")
            if values.get(field) is None
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        return self.validate(values)

    def append(
        self,
        values: dict[str, Any],
        *,
        origin: Origin = Origin.manual,
        possible_duplicate: bool = False,
        external_transaction_id: Optional[str] = None,
        external_account_id: Optional[str] = None,
    ) -> Transaction:
        clean = self.validate_new(values)
        txn = Transaction(
            user_id=self.user_id,
            amount_cents=clean["amount_cents"],
            direction=clean["direction"],
            category=clean["category"],
            subcategory=clean.get("subcategory"),
            merchant=clean["merchant"],
            account=clean.get("account") or "Manual",
            occurred_on=clean["occurred_on"],
            notes=clean.get("notes"),
            origin=origin,
            possible_duplicate=possible_duplicate,
            external_transaction_id=external_transaction_id,
            external_account_id=external_account_id,
        )
        self.session.add(txn)
        self.session.flush()
        return txn

    def get(self, transaction_id: int, *, for_update: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.id == transaction_id, Transaction.user_id == self.user_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def mutate(
        self, transaction_id: int, changes: dict[str, Any]
    ) -> tuple[LedgerEntry, Transaction]:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        for field in ("amount_cents", "direction", "category", "merchant", "account", "occurred_on"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared")
        clean = self.validate(changes)
        txn = self.get(transaction_id, for_update=True)
        before = LedgerEntry.of(txn)
        for field, value in clean.items():
            setattr(txn, field, value)
        self.session.flush()
        return before, txn

    def remove(self, transaction_id: int) -> LedgerEntry:
        txn = self.get(transaction_id, for_update=True)
        before = LedgerEntry.of(txn)
        self.session.delete(txn)
        self.session.flush()
        return before

    def remove_external(self, external_ids: Iterable[str]) -> list[LedgerEntry]:
        ids = [value for value in external_ids if value]
        if not ids:
            return []
        rows = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.external_transaction_id.in_(ids),
            )
            .with_for_update()
        ).all()
        removed = [LedgerEntry.of(txn) for txn in rows]
        for txn in rows:
            self.session.delete(txn)
        self.session.flush()
        return removed

    def clear(self) -> int:
        result = self.session.execute(
            delete(Transaction)
            .where(Transaction.user_id == self.user_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def set_duplicate_flag(self, transaction_id: int, flagged: bool) -> Transaction:
        txn = self.get(transaction_id, for_update=True)
        if txn.possible_duplicate != flagged:
            txn.possible_duplicate = flagged
            self.session.flush()
        return txn

    def mark_not_duplicate(self, transaction_id: int) -> Transaction:
        return self.set_duplicate_flag(transaction_id, False)

    def window(self, around: str, days: int = 1) -> list[Transaction]:
        start, end = day_window(around, days)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_on.between(start, end),
            )
            .order_by(Transaction.occurred_on, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def known_external_ids(self, external_ids: Iterable[str]) -> set[str]:
        ids = [value for value in external_ids if value]
        if not ids:
            return set()
        stmt = select(Transaction.external_transaction_id).where(
            Transaction.user_id == self.user_id,
            Transaction.external_transaction_id.in_(ids),
        )
        return set(self.session.scalars(stmt).all())

    def list_for_user(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.occurred_on.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.direction:
            stmt = stmt.where(Transaction.direction == filters.direction)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.start:
            stmt = stmt.where(Transaction.occurred_on >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.occurred_on <= filters.end)
        if filters.origin:
            stmt = stmt.where(Transaction.origin == filters.origin)
        if filters.possible_duplicate is not None:
            stmt = stmt.where(
                Transaction.possible_duplicate == filters.possible_duplicate
            )
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.merchant).like(like))
        return self.session.scalars(stmt).all()
