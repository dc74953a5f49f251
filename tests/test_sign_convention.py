import copy
import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from plaid.exceptions import ApiException

from aggregator import PlaidAggregatorClient, parse_account, parse_transaction, to_cents
from config import get_settings
from errors import ExternalServiceError
from models import Direction
from sync import map_transaction

FIXTURE = Path(__file__).parent / "fixtures" / "plaid_transactions_get.json"


def load_fixture() -> dict:
    return json.loads(FIXTURE.read_text())


def mapped_by_merchant() -> dict:
    payload = load_fixture()
    accounts = {a["account_id"]: a["name"] for a in payload["accounts"]}
    rows = {}
    for raw in payload["transactions"]:
        item = parse_transaction(raw)
        rows[item.name] = (item, map_transaction(item, accounts))
    return rows


def test_positive_amounts_are_expenses() -> None:
    rows = mapped_by_merchant()

    _, united = rows["United Airlines"]
    assert united["direction"] == Direction.expense
    assert united["amount_cents"] == 50_000
    assert united["category"] == "Travel"
    assert united["subcategory"] == "Airlines and Aviation Services"
    assert united["account"] == "Plaid Checking"

    _, uber = rows["Uber 063015 SF**POOL**"]
    assert uber["direction"] == Direction.expense
    assert uber["amount_cents"] == 633
    assert uber["merchant"] == "Uber"


def test_negative_amounts_are_income_and_fall_back_to_name() -> None:
    _, interest = mapped_by_merchant()["INTRST PYMNT"]

    assert interest["direction"] == Direction.income
    assert interest["amount_cents"] == 422
    assert interest["merchant"] == "INTRST PYMNT"
    assert interest["category"] == "Transfer"


def test_missing_legacy_category_uses_personal_finance_category() -> None:
    _, coffee = mapped_by_merchant()["Starbucks"]

    assert coffee["category"] == "Food And Drink"
    assert coffee["subcategory"] == "Food And Drink Coffee"


def test_pending_flag_and_dates_are_kept() -> None:
    item, _ = mapped_by_merchant()["McDonald's"]

    assert item.pending is True
    assert item.date == "2025-03-12"
    assert item.amount == Decimal("12")


def test_zero_amount_is_dropped() -> None:
    raw = load_fixture()["transactions"][0] | {"amount": 0}

    assert map_transaction(parse_transaction(raw)) is None


def test_unknown_account_gets_placeholder_name() -> None:
    raw = load_fixture()["transactions"][0] | {"account_id": "elsewhere"}

    assert map_transaction(parse_transaction(raw), {})["account"] == "Unknown Account"


def test_account_balances_convert_to_cents() -> None:
    account = parse_account(load_fixture()["accounts"][0])

    assert account.current_cents == 11_094
    assert account.available_cents == 11_094
    assert account.subtype == "checking"


@pytest.mark.parametrize(
    "value, cents",
    [(None, None), (0.1, 10), ("19.995", 2_000), (Decimal("-4.22"), -422), (500, 50_000)],
)
def test_to_cents(value, cents) -> None:
    assert to_cents(value) == cents


class FakeResponse:
    def __init__(self, payload: dict) -> None:
        self.payload = payload

    def to_dict(self) -> dict:
        return self.payload


def api_error(status: int, code: str) -> ApiException:
    exc = ApiException(status=status, reason="error")
    exc.body = json.dumps(
        {"error_code": code, "error_message": "something went wrong", "request_id": "req-42"}
    )
    return exc


class FakePlaidApi:
    def __init__(self, pages: list, failures: list | None = None) -> None:
        self.pages = list(pages)
        self.failures = list(failures or [])
        self.requests = []

    def transactions_get(self, request, _request_timeout=None):
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        return FakeResponse(self.pages.pop(0))

    def item_remove(self, request, _request_timeout=None):
        raise api_error(500, "INTERNAL_SERVER_ERROR")


def client_for(api: FakePlaidApi, sleeps: list) -> PlaidAggregatorClient:
    settings = copy.copy(get_settings())
    settings.aggregator_max_retries = 3
    settings.aggregator_backoff_secs = 0.5
    return PlaidAggregatorClient(settings=settings, api=api, sleep=sleeps.append)


def test_transactions_are_paged_until_total() -> None:
    payload = load_fixture()
    first = dict(payload, transactions=payload["transactions"][:3])
    second = dict(payload, transactions=payload["transactions"][3:])
    api = FakePlaidApi([first, second])

    batch = client_for(api, []).get_transactions(
        "access-sandbox-1", date(2025, 2, 13), date(2025, 3, 15)
    )

    assert len(batch.transactions) == 5
    assert batch.total == 5
    assert [a.name for a in batch.accounts] == ["Plaid Checking"]
    assert [r.options.offset for r in api.requests] == [0, 3]


def test_transient_errors_are_retried_with_backoff() -> None:
    sleeps: list = []
    api = FakePlaidApi([load_fixture()], failures=[api_error(500, "INTERNAL_SERVER_ERROR")])

    batch = client_for(api, sleeps).get_transactions(
        "access-sandbox-1", date(2025, 2, 13), date(2025, 3, 15)
    )

    assert batch.total == 5
    assert sleeps == [0.5]


def test_client_errors_fail_without_retry() -> None:
    sleeps: list = []
    api = FakePlaidApi([], failures=[api_error(400, "ITEM_LOGIN_REQUIRED")])

    with pytest.raises(ExternalServiceError) as excinfo:
        client_for(api, sleeps).get_transactions(
            "access-sandbox-1", date(2025, 2, 13), date(2025, 3, 15)
        )

    assert excinfo.value.aggregator_code == "ITEM_LOGIN_REQUIRED"
    assert excinfo.value.request_id == "req-42"
    assert excinfo.value.retryable is False
    assert sleeps == []


def test_retries_stop_after_the_configured_attempts() -> None:
    sleeps: list = []
    failures = [api_error(503, "INTERNAL_SERVER_ERROR") for _ in range(3)]
    api = FakePlaidApi([], failures=failures)

    with pytest.raises(ExternalServiceError, match="something went wrong"):
        client_for(api, sleeps).get_transactions(
            "access-sandbox-1", date(2025, 2, 13), date(2025, 3, 15)
        )

    assert len(api.requests) == 3
    assert sleeps == [0.5, 1.0]


def test_item_removal_is_not_retried() -> None:
    sleeps: list = []

    with pytest.raises(ExternalServiceError) as excinfo:
        client_for(FakePlaidApi([]), sleeps).remove_item("access-sandbox-1")

    assert excinfo.value.operation == "item_remove"
    assert sleeps == []
