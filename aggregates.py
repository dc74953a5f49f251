"""Keeps budget spent totals and goal saved totals in step with the ledger.

Every change is applied as ``amount = amount + :delta`` in the database, so
two concurrent writers can never lose each other's increment.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ConsistencyWarning, NotFoundError, ValidationError
from ledger import LedgerEntry
from models import BudgetCategory, Direction, Goal, GoalContribution, Transaction
from periods import local_today, month_key, month_period

logger = logging.getLogger(__name__)

BudgetKey = tuple[str, str]


@dataclass
class MutationResult:
    record: object
    warnings: list[str] = field(default_factory=list)


def budget_deltas(
    before: Optional[LedgerEntry], after: Optional[LedgerEntry]
) -> dict[BudgetKey, int]:
    """Net change per ``(category label, month)`` for one ledger mutation.

    A category move yields ``-old`` on the old label and ``+new`` on the new
    one; an amount-only edit collapses to the difference.
    """
    deltas: dict[BudgetKey, int] = defaultdict(int)
    if before is not None and before.direction == Direction.expense:
        deltas[(before.category, before.month)] -= before.amount_cents
    if after is not None and after.direction == Direction.expense:
        deltas[(after.category, after.month)] += after.amount_cents
    return {key: delta for key, delta in deltas.items() if delta}


class AggregateMaintainer:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _apply_budget_deltas(self, deltas: dict[BudgetKey, int]) -> None:
        for (label, month), delta in sorted(deltas.items()):
            self.session.execute(
                update(BudgetCategory)
                .where(
                    BudgetCategory.user_id == self.user_id,
                    BudgetCategory.name == label,
                    BudgetCategory.period == month,
                )
                .values(amount_spent_cents=BudgetCategory.amount_spent_cents + delta)
                .execution_options(synchronize_session="fetch")
            )

    def apply_change(
        self, before: Optional[LedgerEntry], after: Optional[LedgerEntry]
    ) -> list[ConsistencyWarning]:
        """Apply one ledger mutation to the budget totals.

        Runs in a savepoint. On failure the ledger write stays, the warning is
        logged and returned, and ``reconcile`` repairs the totals later.
        """
        deltas = budget_deltas(before, after)
        if not deltas:
            return []
        try:
            with self.session.begin_nested():
                self._apply_budget_deltas(deltas)
        except SQLAlchemyError as exc:
            warning = ConsistencyWarning(
                "Budget totals could not be updated and will be reconciled",
                user_id=self.user_id,
                scope="budget",
            )
            logger.warning(
                f"aggregate_update_failed: user={self.user_id} "
                f"keys={sorted(deltas)} error={exc}"
            )
            return [warning]
        return []

    def record_created(self, txn: Transaction) -> list[ConsistencyWarning]:
        return self.apply_change(None, LedgerEntry.of(txn))

    def record_updated(
        self, before: LedgerEntry, txn: Transaction
    ) -> list[ConsistencyWarning]:
        return self.apply_change(before, LedgerEntry.of(txn))

    def record_deleted(self, before: LedgerEntry) -> list[ConsistencyWarning]:
        return self.apply_change(before, None)

    def spent_from_ledger(self, label: str, month: str) -> int:
        period = month_period(month)
        total = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.direction == Direction.expense,
                Transaction.category == label,
                Transaction.occurred_on.between(period.start_key, period.end_key),
            )
        )
        return int(total or 0)

    def recompute_category(self, category: BudgetCategory) -> int:
        spent = self.spent_from_ledger(category.name, category.period)
        category.amount_spent_cents = spent
        self.session.flush()
        return spent

    def zero_budgets(self) -> None:
        self.session.execute(
            update(BudgetCategory)
            .where(BudgetCategory.user_id == self.user_id)
            .values(amount_spent_cents=0)
            .execution_options(synchronize_session="fetch")
        )

    def reconcile(self) -> int:
        """Recompute every budget total of the user from the ledger.

        Idempotent. Returns how many categories had drifted.
        """
        categories = self.session.scalars(
            select(BudgetCategory).where(BudgetCategory.user_id == self.user_id)
        ).all()
        corrected = 0
        for category in categories:
            expected = self.spent_from_ledger(category.name, category.period)
            if category.amount_spent_cents != expected:
                logger.info(
                    f"aggregate_reconciled: user={self.user_id} category={category.id} "
                    f"period={category.period} stored={category.amount_spent_cents} "
                    f"expected={expected}"
                )
                category.amount_spent_cents = expected
                corrected += 1
        self.session.flush()
        return corrected

    def contribute_to_goal(
        self, goal_id: int, amount_cents: int, today: Optional[date] = None
    ) -> Goal:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationError("Contribution must be an integer number of cents")
        if amount_cents <= 0:
            raise ValidationError("Contribution must be positive")
        month = month_key(today or local_today())

        result = self.session.execute(
            update(Goal)
            .where(Goal.id == goal_id, Goal.user_id == self.user_id)
            .values(current_amount_cents=Goal.current_amount_cents + amount_cents)
            .execution_options(synchronize_session="fetch")
        )
        if not result.rowcount:
            raise NotFoundError("Goal not found")

        merged = self.session.execute(
            update(GoalContribution)
            .where(GoalContribution.goal_id == goal_id, GoalContribution.month == month)
            .values(amount_cents=GoalContribution.amount_cents + amount_cents)
            .execution_options(synchronize_session="fetch")
        )
        if not merged.rowcount:
            try:
                with self.session.begin_nested():
                    self.session.add(
                        GoalContribution(
                            goal_id=goal_id, month=month, amount_cents=amount_cents
                        )
                    )
            except IntegrityError:
                # Another writer created this month's entry first.
                self.session.execute(
                    update(GoalContribution)
                    .where(
                        GoalContribution.goal_id == goal_id,
                        GoalContribution.month == month,
                    )
                    .values(amount_cents=GoalContribution.amount_cents + amount_cents)
                    .execution_options(synchronize_session="fetch")
                )

        goal = self.session.get(Goal, goal_id)
        self.session.refresh(goal)
        return goal
