import copy
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import Base
from errors import ConflictError, ExternalServiceError, NotFoundError
from models import (
    BudgetCategory,
    Direction,
    ExternalAccount,
    ExternalAccountLink,
    LinkStatus,
    Origin,
    Transaction,
    WebhookEvent,
)
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionService
from sync import ExternalSyncReconciler

TODAY = date(2025, 3, 15)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def linked(session, aggregator, user_id: int = 1, item_id: str = "item-1"):
    public_token = aggregator.add_item(item_id, institution_id="ins_109508")
    reconciler = ExternalSyncReconciler(session, aggregator, today=TODAY)
    link = reconciler.exchange_token(user_id, public_token)
    return reconciler, link


def webhook(item_id: str, webhook_type: str, webhook_code: str, **extra):
    payload = {
        "webhook_type": webhook_type,
        "webhook_code": webhook_code,
        "item_id": item_id,
        "environment": "sandbox",
    }
    payload.update(extra)
    return payload


def deliver(reconciler, payload):
    event = reconciler.record_webhook(payload)
    return reconciler.process_event(event.id)


def test_exchange_creates_active_link_with_encrypted_credential(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)

    assert link.status == LinkStatus.active
    assert link.institution_id == "ins_109508"
    assert link.institution_name == "First Platypus Bank"
    assert "access-sandbox" not in link.access_credential_encrypted
    assert reconciler.vault.decrypt(link.access_credential_encrypted) == (
        "access-sandbox-item-1"
    )
    accounts = session.scalars(select(ExternalAccount)).all()
    assert [(a.account_id, a.current_balance_cents) for a in accounts] == [
        ("item-1-checking", 11_094)
    ]


def test_duplicate_institution_is_rejected_before_exchange(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)
    second = aggregator.add_item("item-2", institution_id="ins_109508")

    with pytest.raises(ConflictError) as excinfo:
        reconciler.exchange_token(1, second, institution_id="ins_109508")

    assert excinfo.value.code == "DUPLICATE_LINK"
    assert second not in aggregator.exchanged
    assert session.scalar(select(func.count(ExternalAccountLink.id))) == 1


def test_duplicate_institution_found_after_exchange_revokes_new_item(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)
    second = aggregator.add_item("item-2", institution_id="ins_109508")

    with pytest.raises(ConflictError, match="already linked"):
        reconciler.exchange_token(1, second)

    assert aggregator.removed == ["access-sandbox-item-2"]
    assert session.scalar(select(func.count(ExternalAccountLink.id))) == 1


def test_same_institution_for_another_user_is_allowed(aggregator) -> None:
    session = make_session()
    linked(session, aggregator, user_id=1, item_id="item-1")
    _, link = linked(session, aggregator, user_id=2, item_id="item-2")

    assert link.user_id == 2


def test_failed_exchange_creates_nothing(aggregator) -> None:
    session = make_session()
    reconciler = ExternalSyncReconciler(session, aggregator, today=TODAY)

    with pytest.raises(ExternalServiceError) as excinfo:
        reconciler.exchange_token(1, "public-sandbox-unknown")

    assert excinfo.value.aggregator_code == "INVALID_PUBLIC_TOKEN"
    assert excinfo.value.request_id == "req-exchange"
    assert session.scalar(select(func.count(ExternalAccountLink.id))) == 0


def test_sync_maps_signs_skips_pending_and_is_idempotent(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    aggregator.add_transaction("item-1", "t-2", "-1200.00", "2025-03-01", "Payroll")
    aggregator.add_transaction("item-1", "t-3", "9.99", "2025-03-14", "Spotify", pending=True)
    aggregator.add_transaction("item-1", "t-4", "5.00", "2025-01-01", "Too Old")

    result = reconciler.sync_link(link)
    again = reconciler.sync_link(link)

    assert (result.fetched, result.added, result.skipped) == (3, 2, 1)
    assert again.added == 0
    rows = {t.external_transaction_id: t for t in session.scalars(select(Transaction))}
    assert set(rows) == {"t-1", "t-2"}
    assert rows["t-1"].direction == Direction.expense
    assert rows["t-1"].amount_cents == 2_510
    assert rows["t-1"].origin == Origin.bank_sync
    assert rows["t-1"].account == "Plaid Checking"
    assert rows["t-2"].direction == Direction.income
    assert rows["t-2"].amount_cents == 120_000
    assert link.last_synced_at is not None


def test_bank_sync_duplicate_of_manual_entry_is_flagged(aggregator) -> None:
    session = make_session()
    TransactionService(session, user_id=1).create(
        TransactionIn(
            amount_cents=4_250,
            direction=Direction.expense,
            category="Dining",
            merchant="Starbucks Downtown",
            occurred_on="2025-03-11",
        )
    )
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction(
        "item-1", "t-sbux", "42.50", "2025-03-10", "Starbucks #123",
        category=("Food and Drink", "Restaurants", "Coffee Shop"),
    )

    result = reconciler.sync_link(link)

    assert result.flagged == 1
    synced = session.scalar(
        select(Transaction).where(Transaction.external_transaction_id == "t-sbux")
    )
    assert synced.possible_duplicate is True
    assert synced.origin == Origin.bank_sync


def test_bank_categories_map_onto_budget_names(aggregator) -> None:
    session = make_session()
    categories = CategoryService(session, user_id=1)
    categories.create(CategoryIn(name="travel", budget_amount_cents=100_000, period="2025-03"))
    categories.create(
        CategoryIn(name="Food and Drinks", budget_amount_cents=20_000, period="2025-03")
    )
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction(
        "item-1", "t-1", "500", "2025-03-10", "United Airlines", category=("Travel",)
    )
    aggregator.add_transaction(
        "item-1", "t-2", "12.00", "2025-03-11", "McDonald's",
        category=("Food and Drink", "Restaurants"),
    )

    reconciler.sync_link(link)

    spent = dict(
        session.execute(select(BudgetCategory.name, BudgetCategory.amount_spent_cents)).all()
    )
    assert spent == {"travel": 50_000, "Food and Drinks": 1_200}


def test_sync_refreshes_account_balances(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)
    aggregator.update_balance("item-1", 5_000)

    reconciler.sync_link(link)

    account = session.scalar(select(ExternalAccount))
    assert account.current_balance_cents == 5_000


def test_identical_deliveries_are_separate_events_with_one_ledger_effect(
    aggregator,
) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    payload = webhook("item-1", "TRANSACTIONS", "DEFAULT_UPDATE", new_transactions=1)

    first = deliver(reconciler, payload)
    ledger_after_first = session.scalars(select(Transaction.id)).all()
    second = deliver(reconciler, dict(payload))

    assert first.id != second.id
    assert (first.processed, second.processed) == (True, True)
    assert session.scalar(select(func.count(WebhookEvent.id))) == 2
    assert session.scalars(select(Transaction.id)).all() == ledger_after_first


def test_processing_an_event_twice_is_a_no_op(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    event = deliver(reconciler, webhook("item-1", "TRANSACTIONS", "DEFAULT_UPDATE"))

    again = reconciler.process_event(event.id)

    assert again.attempts == 1
    assert session.scalar(select(func.count(Transaction.id))) == 1


def test_repeated_sync_notifications_pick_up_new_transactions(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)
    payload = webhook("item-1", "TRANSACTIONS", "SYNC_UPDATES_AVAILABLE")
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    deliver(reconciler, payload)

    aggregator.add_transaction("item-1", "t-2", "8.75", "2025-03-12", "Bakery")
    deliver(reconciler, dict(payload))

    external_ids = session.scalars(
        select(Transaction.external_transaction_id).order_by(Transaction.id)
    ).all()
    assert external_ids == ["t-1", "t-2"]


def test_recurring_item_error_after_repair_is_applied(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)
    error = webhook(
        "item-1",
        "ITEM",
        "ERROR",
        error={"error_code": "ITEM_LOGIN_REQUIRED", "error_message": "login required"},
    )
    repaired = webhook("item-1", "ITEM", "LOGIN_REPAIRED")

    deliver(reconciler, error)
    deliver(reconciler, repaired)
    assert link.status == LinkStatus.active

    deliver(reconciler, dict(error))
    assert link.status == LinkStatus.error
    assert link.last_error == "login required"


def test_link_lifecycle_follows_item_webhooks(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)

    deliver(reconciler, webhook("item-1", "ITEM", "PENDING_EXPIRATION"))
    assert link.status == LinkStatus.pending_expiration

    deliver(reconciler, webhook("item-1", "ITEM", "LOGIN_REPAIRED"))
    assert link.status == LinkStatus.active

    deliver(
        reconciler,
        webhook(
            "item-1",
            "ITEM",
            "ERROR",
            error={"error_code": "ITEM_LOGIN_REQUIRED", "error_message": "login required"},
        ),
    )
    assert link.status == LinkStatus.error
    assert link.last_error == "login required"

    deliver(reconciler, webhook("item-1", "ITEM", "USER_PERMISSION_REVOKED"))
    assert link.status == LinkStatus.disconnected

    event = deliver(reconciler, webhook("item-1", "ITEM", "LOGIN_REPAIRED"))
    assert link.status == LinkStatus.disconnected
    assert event.processed is True
    assert event.last_error == "Link disconnected"


def test_transactions_webhook_on_errored_link_does_not_sync(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    deliver(reconciler, webhook("item-1", "ITEM", "ERROR", error=None))

    event = deliver(reconciler, webhook("item-1", "TRANSACTIONS", "DEFAULT_UPDATE"))

    assert event.processed is True
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_removed_transactions_webhook_updates_budget(aggregator) -> None:
    session = make_session()
    CategoryService(session, user_id=1).create(
        CategoryIn(name="Shops", budget_amount_cents=10_000, period="2025-03")
    )
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Hardware")
    aggregator.add_transaction("item-1", "t-2", "10.00", "2025-03-11", "Bookshop")
    reconciler.sync_link(link)

    deliver(
        reconciler,
        webhook("item-1", "TRANSACTIONS", "TRANSACTIONS_REMOVED", removed_transactions=["t-1"]),
    )

    remaining = session.scalars(select(Transaction.external_transaction_id)).all()
    assert remaining == ["t-2"]
    assert session.scalar(select(BudgetCategory.amount_spent_cents)) == 1_000


def test_failed_event_stays_pending_and_replays(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)
    aggregator.add_transaction("item-1", "t-1", "25.10", "2025-03-10", "Shell Oil")
    aggregator.transactions_error = ExternalServiceError(
        "Aggregator call 'transactions_get' failed",
        operation="transactions_get",
        aggregator_code="INTERNAL_SERVER_ERROR",
        retryable=True,
    )

    failed = deliver(reconciler, webhook("item-1", "TRANSACTIONS", "DEFAULT_UPDATE"))
    other = deliver(reconciler, webhook("item-1", "ITEM", "PENDING_EXPIRATION"))

    assert failed.processed is False
    assert failed.attempts == 1
    assert "transactions_get" in failed.last_error
    assert other.processed is True
    assert link.status == LinkStatus.pending_expiration

    aggregator.transactions_error = None
    assert reconciler.replay_pending() == {"processed": 1, "failed": 0}
    replayed = session.get(WebhookEvent, failed.id)
    assert replayed.processed is True
    assert replayed.attempts == 2
    assert session.scalar(select(func.count(Transaction.id))) == 1


def test_webhook_for_unknown_item_is_recorded_and_closed(aggregator) -> None:
    session = make_session()
    reconciler = ExternalSyncReconciler(session, aggregator, today=TODAY)

    event = deliver(reconciler, webhook("nobody", "TRANSACTIONS", "DEFAULT_UPDATE"))

    assert event.processed is True
    assert event.last_error == "Unknown item"


def test_unhandled_webhook_is_kept_with_a_note(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator)

    event = deliver(reconciler, webhook("item-1", "HOLDINGS", "DEFAULT_UPDATE"))

    assert event.processed is True
    assert event.last_error == "Unhandled HOLDINGS/DEFAULT_UPDATE"


def test_remove_link_revokes_then_disconnects_without_deleting(aggregator) -> None:
    session = make_session()
    reconciler, link = linked(session, aggregator)

    removed = reconciler.remove_link(1, "item-1")

    assert aggregator.removed == ["access-sandbox-item-1"]
    assert removed.status == LinkStatus.disconnected
    assert session.scalar(select(func.count(ExternalAccountLink.id))) == 1
    assert session.scalar(select(func.count(ExternalAccount.id))) == 1

    reconciler.remove_link(1, "item-1")
    assert aggregator.removed == ["access-sandbox-item-1"]


def test_links_are_owner_scoped(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator, user_id=1)

    with pytest.raises(NotFoundError, match="Link not found"):
        reconciler.remove_link(2, "item-1")
    assert reconciler.list_links(2) == []
    assert [link.item_id for link in reconciler.list_links(1)] == ["item-1"]


def test_relinking_after_disconnect_is_allowed(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator, item_id="item-1")
    reconciler.remove_link(1, "item-1")

    public_token = aggregator.add_item("item-2", institution_id="ins_109508")
    link = reconciler.exchange_token(1, public_token, institution_id="ins_109508")

    assert link.status == LinkStatus.active


def test_flagged_bank_rows_can_be_skipped_by_setting(aggregator) -> None:
    session = make_session()
    TransactionService(session, user_id=1).create(
        TransactionIn(
            amount_cents=4_250,
            category="Dining",
            merchant="Starbucks Downtown",
            occurred_on="2025-03-11",
        )
    )
    settings = copy.copy(get_settings())
    settings.skip_flagged_bank_duplicates = True
    public_token = aggregator.add_item("item-1", institution_id="ins_109508")
    reconciler = ExternalSyncReconciler(session, aggregator, settings=settings, today=TODAY)
    link = reconciler.exchange_token(1, public_token)
    aggregator.add_transaction("item-1", "t-sbux", "42.50", "2025-03-10", "Starbucks #123")

    result = reconciler.sync_link(link)

    assert (result.added, result.flagged, result.skipped) == (0, 1, 1)
    assert session.scalar(select(func.count(Transaction.id))) == 1


def test_replay_for_a_user_leaves_other_users_events_alone(aggregator) -> None:
    session = make_session()
    reconciler, _ = linked(session, aggregator, user_id=1, item_id="item-1")
    linked(session, aggregator, user_id=2, item_id="item-2")
    aggregator.transactions_error = ExternalServiceError(
        "Aggregator call 'transactions_get' failed",
        operation="transactions_get",
        retryable=True,
    )
    mine = deliver(reconciler, webhook("item-1", "TRANSACTIONS", "DEFAULT_UPDATE"))
    theirs = deliver(reconciler, webhook("item-2", "TRANSACTIONS", "DEFAULT_UPDATE"))
    aggregator.transactions_error = None

    assert reconciler.replay_pending(user_id=1) == {"processed": 1, "failed": 0}
    assert session.get(WebhookEvent, mine.id).processed is True
    assert session.get(WebhookEvent, theirs.id).processed is False
    assert session.get(WebhookEvent, theirs.id).attempts == 1
