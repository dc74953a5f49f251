from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from rapidfuzz.distance import Levenshtein

from aggregates import AggregateMaintainer, MutationResult
from duplicates import Candidate, is_possible_duplicate
from errors import (
    ConflictError,
    ConsistencyWarning,
    FinanceError,
    NotFoundError,
    ValidationError,
)
from ledger import LedgerStore, TransactionFilters
from models import BudgetCategory, Direction, Goal, Origin, Transaction
from periods import current_month
from schemas import (
    CategoryIn,
    CategoryUpdate,
    GoalIn,
    GoalUpdate,
    ImportRowIn,
    TransactionIn,
    TransactionPatch,
)
from scoring import ScoreEngine

logger = logging.getLogger(__name__)

DEFAULT_IMPORT_CATEGORY = "Uncategorized"
DEFAULT_IMPORT_ACCOUNT = "Imported"


def invalidate_score(session: Session, user_id: int) -> None:
    ScoreEngine(session, user_id).invalidate()


def _messages(warnings: list[ConsistencyWarning]) -> list[str]:
    return [warning.message for warning in warnings]


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[BudgetCategory]:
        stmt = (
            select(BudgetCategory)
            .where(BudgetCategory.user_id == self.user_id)
            .order_by(BudgetCategory.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> BudgetCategory:
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(BudgetCategory.id).where(
            BudgetCategory.user_id == self.user_id, BudgetCategory.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(
                "Category with this name already exists", code="DUPLICATE_CATEGORY"
            )

    def create(self, data: CategoryIn, today: Optional[date] = None) -> BudgetCategory:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty")
        self._ensure_unique(name)
        category = BudgetCategory(
            user_id=self.user_id,
            name=name,
            budget_amount_cents=data.budget_amount_cents,
            amount_spent_cents=0,
            period=data.period or current_month(today).slug,
        )
        self.session.add(category)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "Category with this name already exists", code="DUPLICATE_CATEGORY"
            ) from exc
        AggregateMaintainer(self.session, self.user_id).recompute_category(category)
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> BudgetCategory:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        needs_recompute = False
        if "name" in changes:
            name = changes["name"].strip()
            if name != category.name:
                self._ensure_unique(name, exclude_id=category.id)
                category.name = name
                needs_recompute = True
        if "period" in changes and changes["period"] != category.period:
            category.period = changes["period"]
            needs_recompute = True
        if "budget_amount_cents" in changes:
            category.budget_amount_cents = changes["budget_amount_cents"]
        self.session.flush()
        if needs_recompute:
            AggregateMaintainer(self.session, self.user_id).recompute_category(category)
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.delete(category)
        invalidate_score(self.session, self.user_id)
        self.session.commit()

    def match_label(self, raw: Optional[str]) -> Optional[str]:
        """Map a free-form category label onto one of the user's budget names.

        Exact case-insensitive match first, then a unique match within one edit.
        Unmatched labels are returned unchanged.
        """
        label = (raw or "").strip()
        if not label:
            return None
        input_lower = label.lower()
        exact = self.session.scalar(
            select(BudgetCategory.name).where(
                BudgetCategory.user_id == self.user_id,
                func.lower(BudgetCategory.name) == input_lower,
            )
        )
        if exact:
            return exact

        names = self.session.scalars(
            select(BudgetCategory.name).where(BudgetCategory.user_id == self.user_id)
        ).all()
        best_distance: Optional[int] = None
        best: list[str] = []
        for name in names:
            dist = int(Levenshtein.distance(input_lower, name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [name]
            elif dist == best_distance:
                best.append(name)
        if best_distance is not None and best_distance <= 1 and len(set(best)) == 1:
            return best[0]
        return label


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ledger = LedgerStore(session, user_id)
        self.maintainer = AggregateMaintainer(session, user_id)

    def get(self, transaction_id: int) -> Transaction:
        return self.ledger.get(transaction_id)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        return self.ledger.list_for_user(filters, limit=limit, offset=offset)

    def check_duplicate(self, values: dict[str, Any]) -> bool:
        candidate = Candidate(
            amount_cents=values["amount_cents"],
            merchant=values["merchant"],
            occurred_on=values["occurred_on"],
        )
        return is_possible_duplicate(candidate, self.ledger.window(values["occurred_on"]))

    def record(
        self,
        values: dict[str, Any],
        *,
        origin: Origin,
        external_transaction_id: Optional[str] = None,
        external_account_id: Optional[str] = None,
    ) -> tuple[Transaction, list[ConsistencyWarning]]:
        """Duplicate-check, append and fold into the budget totals. No commit."""
        clean = self.ledger.validate_new(values)
        flagged = self.check_duplicate(clean)
        txn = self.ledger.append(
            clean,
            origin=origin,
            possible_duplicate=flagged,
            external_transaction_id=external_transaction_id,
            external_account_id=external_account_id,
        )
        warnings = self.maintainer.record_created(txn)
        return txn, warnings

    def create(self, data: TransactionIn) -> MutationResult:
        txn, warnings = self.record(data.model_dump(), origin=Origin.manual)
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(txn)
        if txn.possible_duplicate:
            logger.info(f"duplicate_flagged: user={self.user_id} transaction={txn.id}")
        return MutationResult(txn, _messages(warnings))

    def update(self, transaction_id: int, data: TransactionPatch) -> MutationResult:
        changes = data.model_dump(exclude_unset=True)
        before, txn = self.ledger.mutate(transaction_id, changes)
        warnings = self.maintainer.record_updated(before, txn)
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(txn)
        return MutationResult(txn, _messages(warnings))

    def delete(self, transaction_id: int) -> list[str]:
        before = self.ledger.remove(transaction_id)
        warnings = self.maintainer.record_deleted(before)
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        return _messages(warnings)

    def clear(self) -> int:
        removed = self.ledger.clear()
        self.maintainer.zero_budgets()
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        logger.info(f"transactions_cleared: user={self.user_id} removed={removed}")
        return removed

    def mark_not_duplicate(self, transaction_id: int) -> Transaction:
        txn = self.ledger.mark_not_duplicate(transaction_id)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def import_rows(self, rows: list[ImportRowIn]) -> dict[str, object]:
        """Import already-parsed statement rows.

        Negative amounts are expenses. Bad rows are reported and skipped;
        possible duplicates are flagged but still imported.
        """
        categories = CategoryService(self.session, self.user_id)
        imported = 0
        duplicates = 0
        errors: list[str] = []
        warnings: list[ConsistencyWarning] = []
        for index, row in enumerate(rows, start=1):
            if row.amount_cents == 0:
                errors.append(f"Row {index}: amount cannot be zero")
                continue
            if row.amount_cents < 0:
                direction = Direction.expense
            else:
                direction = row.direction or Direction.expense
            values = {
                "amount_cents": abs(row.amount_cents),
                "direction": direction,
                "category": categories.match_label(row.category)
                or DEFAULT_IMPORT_CATEGORY,
                "subcategory": row.subcategory,
                "merchant": row.merchant,
                "account": row.account or DEFAULT_IMPORT_ACCOUNT,
                "occurred_on": row.occurred_on,
                "notes": row.notes,
            }
            try:
                txn, row_warnings = self.record(values, origin=Origin.imported)
            except FinanceError as exc:
                errors.append(f"Row {index}: {exc.message}")
                continue
            imported += 1
            duplicates += int(txn.possible_duplicate)
            warnings.extend(row_warnings)
        if imported:
            invalidate_score(self.session, self.user_id)
        self.session.commit()
        logger.info(
            f"import_finished: user={self.user_id} imported={imported} "
            f"duplicates={duplicates} errors={len(errors)}"
        )
        return {
            "imported": imported,
            "duplicates": duplicates,
            "errors": errors,
            "warnings": _messages(warnings),
        }


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .options(selectinload(Goal.contributions))
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=data.current_amount_cents,
            target_date=data.target_date,
        )
        self.session.add(goal)
        self.session.flush()
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdate) -> Goal:
        goal = self.get(goal_id)
        changes = data.model_dump(exclude_unset=True)
        for field in ("name", "target_amount_cents", "current_amount_cents"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared")
        if "name" in changes:
            goal.name = changes["name"].strip()
        if "target_amount_cents" in changes:
            goal.target_amount_cents = changes["target_amount_cents"]
        if "current_amount_cents" in changes:
            # Direct correction; the only path that may lower the saved amount.
            goal.current_amount_cents = changes["current_amount_cents"]
        if "target_date" in changes:
            goal.target_date = changes["target_date"]
        self.session.flush()
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        invalidate_score(self.session, self.user_id)
        self.session.commit()

    def contribute(
        self, goal_id: int, amount_cents: int, today: Optional[date] = None
    ) -> Goal:
        goal = AggregateMaintainer(self.session, self.user_id).contribute_to_goal(
            goal_id, amount_cents, today=today
        )
        invalidate_score(self.session, self.user_id)
        self.session.commit()
        self.session.refresh(goal)
        return goal
