from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Direction(str, Enum):
    income = "income"
    expense = "expense"


class Origin(str, Enum):
    manual = "manual"
    imported = "imported"
    bank_sync = "bank-sync"


class LinkStatus(str, Enum):
    active = "active"
    error = "error"
    disconnected = "disconnected"
    pending_expiration = "pending_expiration"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


DIRECTION_ENUM = SAEnum(Direction, name="direction", values_callable=_enum_values)
ORIGIN_ENUM = SAEnum(Origin, name="origin", values_callable=_enum_values)
LINK_STATUS_ENUM = SAEnum(LinkStatus, name="linkstatus", values_callable=_enum_values)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[Direction] = mapped_column(DIRECTION_ENUM, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String(100))
    merchant: Mapped[str] = mapped_column(String(200), nullable=False)
    account: Mapped[str] = mapped_column(String(100), nullable=False)
    # Kept exactly as supplied (YYYY-MM-DD); compared as a string.
    occurred_on: Mapped[str] = mapped_column(String(10), nullable=False)
    origin: Mapped[Origin] = mapped_column(
        ORIGIN_ENUM, nullable=False, default=Origin.manual
    )
    possible_duplicate: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(100))
    external_account_id: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        UniqueConstraint(
            "user_id", "external_transaction_id", name="uq_txn_user_external_id"
        ),
        Index("ix_transactions_user_date", "user_id", "occurred_on"),
        Index("ix_transactions_user_category_date", "user_id", "category", "occurred_on"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    budget_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period: Mapped[str] = mapped_column(String(7), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_budget_category_user_name"),
        CheckConstraint(
            "budget_amount_cents >= 0", name="ck_budget_category_amount_positive"
        ),
    )

    @property
    def remaining_cents(self) -> int:
        return self.budget_amount_cents - self.amount_spent_cents


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_date: Mapped[Optional[str]] = mapped_column(String(10))

    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution",
        back_populates="goal",
        order_by="GoalContribution.month",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
        CheckConstraint("current_amount_cents >= 0", name="ck_goal_current_positive"),
        Index("ix_goals_user", "user_id"),
    )

    @property
    def progress_percentage(self) -> Decimal:
        # Uncapped; display layers clamp.
        return (
            Decimal(self.current_amount_cents) * 100 / Decimal(self.target_amount_cents)
        ).quantize(Decimal("0.01"))


class GoalContribution(Base, TimestampMixin):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("goals.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    goal: Mapped["Goal"] = relationship("Goal", back_populates="contributions")

    __table_args__ = (
        UniqueConstraint("goal_id", "month", name="uq_goal_contribution_month"),
    )


class ScoreSnapshot(Base):
    __tablename__ = "scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_adherence: Mapped[float] = mapped_column(Float, nullable=False)
    savings_progress: Mapped[float] = mapped_column(Float, nullable=False)
    engagement: Mapped[float] = mapped_column(Float, nullable=False)
    goals_completed: Mapped[float] = mapped_column(Float, nullable=False)
    cash_flow: Mapped[float] = mapped_column(Float, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 100", name="ck_score_bounds"),
    )


class ExternalAccountLink(Base, TimestampMixin):
    __tablename__ = "external_account_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    item_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    access_credential_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    credential_fingerprint: Mapped[str] = mapped_column(String(16), nullable=False)
    institution_id: Mapped[Optional[str]] = mapped_column(String(64))
    institution_name: Mapped[Optional[str]] = mapped_column(String(200))
    status: Mapped[LinkStatus] = mapped_column(
        LINK_STATUS_ENUM, nullable=False, default=LinkStatus.active
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    accounts: Mapped[list["ExternalAccount"]] = relationship(
        "ExternalAccount", back_populates="link", order_by="ExternalAccount.id"
    )

    __table_args__ = (
        Index("ix_external_links_user_institution", "user_id", "institution_id"),
    )


class ExternalAccount(Base, TimestampMixin):
    __tablename__ = "external_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    link_id: Mapped[int] = mapped_column(
        ForeignKey("external_account_links.id"), nullable=False
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    official_name: Mapped[Optional[str]] = mapped_column(String(200))
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    subtype: Mapped[Optional[str]] = mapped_column(String(40))
    mask: Mapped[Optional[str]] = mapped_column(String(8))
    available_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    current_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    iso_currency_code: Mapped[Optional[str]] = mapped_column(String(3))

    link: Mapped["ExternalAccountLink"] = relationship(
        "ExternalAccountLink", back_populates="accounts"
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    webhook_type: Mapped[str] = mapped_column(String(40), nullable=False)
    webhook_code: Mapped[str] = mapped_column(String(60), nullable=False)
    item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String(100))
    error: Mapped[Optional[str]] = mapped_column(Text)
    new_transactions_count: Mapped[Optional[int]] = mapped_column(Integer)
    removed_transactions_count: Mapped[Optional[int]] = mapped_column(Integer)
    request_id: Mapped[Optional[str]] = mapped_column(String(64))
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_webhook_events_processed", "processed", "id"),
        Index("ix_webhook_events_item", "item_id"),
    )
