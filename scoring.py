import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models import BudgetCategory, Direction, Goal, ScoreSnapshot, Transaction
from periods import current_month, local_today

logger = logging.getLogger(__name__)

WEIGHTS = {
    "budget_adherence": Decimal("0.35"),
    "savings_progress": Decimal("0.25"),
    "engagement": Decimal("0.15"),
    "goals_completed": Decimal("0.15"),
    "cash_flow": Decimal("0.10"),
}


@dataclass(frozen=True)
class ScoreFactors:
    budget_adherence: float
    savings_progress: float
    engagement: float
    goals_completed: float
    cash_flow: float

    def composite(self) -> int:
        values = asdict(self)
        total = sum(
            Decimal(str(values[name])) * weight * 100 for name, weight in WEIGHTS.items()
        )
        rounded = int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return max(0, min(100, rounded))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ScoreEngine:
    def __init__(
        self, session: Session, user_id: int, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.today = today

    def _today(self) -> date:
        return self.today or local_today()

    def budget_adherence(self) -> float:
        categories = self.session.scalars(
            select(BudgetCategory).where(BudgetCategory.user_id == self.user_id)
        ).all()
        if not categories:
            return 0.0
        within = sum(
            1 for c in categories if c.amount_spent_cents <= c.budget_amount_cents
        )
        return within / len(categories)

    def _goals(self) -> list[Goal]:
        return self.session.scalars(
            select(Goal).where(Goal.user_id == self.user_id)
        ).all()

    def savings_progress(self, goals: list[Goal]) -> float:
        if not goals:
            return 0.0
        ratios = [
            min(goal.current_amount_cents / goal.target_amount_cents, 1.0)
            for goal in goals
        ]
        return sum(ratios) / len(ratios)

    def goals_completed(self, goals: list[Goal]) -> float:
        if not goals:
            return 0.0
        done = sum(
            1 for goal in goals if goal.current_amount_cents >= goal.target_amount_cents
        )
        return done / len(goals)

    def engagement(self) -> float:
        today = self._today()
        period = current_month(today)
        active_days = self.session.scalar(
            select(func.count(func.distinct(Transaction.occurred_on))).where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_on.between(period.start_key, today.isoformat()),
            )
        )
        return _clamp((active_days or 0) / today.day, 0.0, 1.0)

    def cash_flow(self) -> float:
        today = self._today()
        period = current_month(today)
        rows = self.session.execute(
            select(Transaction.direction, func.sum(Transaction.amount_cents))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.occurred_on.between(period.start_key, period.end_key),
            )
            .group_by(Transaction.direction)
        ).all()
        totals = {Direction(direction): int(total or 0) for direction, total in rows}
        income = totals.get(Direction.income, 0)
        if income <= 0:
            return 0.0
        expense = totals.get(Direction.expense, 0)
        return _clamp((income - expense) / income, -1.0, 1.0)

    def compute_factors(self) -> ScoreFactors:
        goals = self._goals()
        return ScoreFactors(
            budget_adherence=self.budget_adherence(),
            savings_progress=self.savings_progress(goals),
            engagement=self.engagement(),
            goals_completed=self.goals_completed(goals),
            cash_flow=self.cash_flow(),
        )

    def invalidate(self) -> None:
        self.session.execute(
            delete(ScoreSnapshot)
            .where(ScoreSnapshot.user_id == self.user_id)
            .execution_options(synchronize_session="fetch")
        )

    def recompute(self) -> ScoreSnapshot:
        factors = self.compute_factors()
        score = factors.composite()
        snapshot = self.session.scalar(
            select(ScoreSnapshot).where(ScoreSnapshot.user_id == self.user_id)
        )
        if snapshot is None:
            snapshot = ScoreSnapshot(user_id=self.user_id)
            self.session.add(snapshot)
        snapshot.score = score
        for name, value in asdict(factors).items():
            setattr(snapshot, name, value)
        snapshot.computed_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(snapshot)
        logger.info(f"score_recomputed: user={self.user_id} score={score}")
        return snapshot

    def get_score(self) -> ScoreSnapshot:
        snapshot = self.session.scalar(
            select(ScoreSnapshot).where(ScoreSnapshot.user_id == self.user_id)
        )
        if snapshot is not None:
            return snapshot
        return self.recompute()
