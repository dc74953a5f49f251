from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from aggregator import (
    AggregatorAccount,
    AggregatorTransaction,
    ExchangeResult,
    ItemInfo,
    LinkHandle,
    TransactionBatch,
)
from errors import ExternalServiceError


class FakeAggregator:
    """In-memory stand-in for the bank-data aggregator."""

    def __init__(self) -> None:
        self.items: dict[str, ItemInfo] = {}
        self.accounts: dict[str, list[AggregatorAccount]] = {}
        self.transactions: dict[str, list[AggregatorTransaction]] = {}
        self.removed: list[str] = []
        self.exchanged: list[str] = []
        self.transactions_error: Optional[ExternalServiceError] = None

    def add_item(
        self,
        item_id: str,
        institution_id: str,
        institution_name: str = "First Platypus Bank",
    ) -> str:
        access_token = f"access-sandbox-{item_id}"
        self.items[access_token] = ItemInfo(item_id, institution_id, institution_name)
        self.accounts[access_token] = [
            AggregatorAccount(
                account_id=f"{item_id}-checking",
                name="Plaid Checking",
                type="depository",
                subtype="checking",
                mask="0000",
                available_cents=11_094,
                current_cents=11_094,
                iso_currency_code="USD",
            )
        ]
        self.transactions[access_token] = []
        return f"public-sandbox-{item_id}"

    def add_transaction(
        self,
        item_id: str,
        transaction_id: str,
        amount: str,
        day: str,
        name: str,
        category: tuple[str, ...] = ("Shops",),
        pending: bool = False,
    ) -> None:
        access_token = f"access-sandbox-{item_id}"
        self.transactions[access_token].append(
            AggregatorTransaction(
                transaction_id=transaction_id,
                account_id=f"{item_id}-checking",
                amount=Decimal(amount),
                date=day,
                name=name,
                merchant_name=name,
                category=category,
                pending=pending,
            )
        )

    def update_balance(self, item_id: str, current_cents: int) -> None:
        access_token = f"access-sandbox-{item_id}"
        self.accounts[access_token] = [
            replace(account, current_cents=current_cents)
            for account in self.accounts[access_token]
        ]

    def create_link_handle(self, user_id: int) -> LinkHandle:
        return LinkHandle(link_token=f"link-sandbox-{user_id}", expiration=None)

    def exchange(self, public_token: str) -> ExchangeResult:
        item_id = public_token.removeprefix("public-sandbox-")
        access_token = f"access-sandbox-{item_id}"
        if access_token not in self.items:
            raise ExternalServiceError(
                "Aggregator call 'item_public_token_exchange' failed",
                operation="item_public_token_exchange",
                aggregator_code="INVALID_PUBLIC_TOKEN",
                request_id="req-exchange",
            )
        self.exchanged.append(public_token)
        return ExchangeResult(access_token=access_token, item_id=item_id)

    def get_item(self, access_token: str) -> ItemInfo:
        return self.items[access_token]

    def get_accounts(self, access_token: str) -> list[AggregatorAccount]:
        return list(self.accounts[access_token])

    def get_transactions(
        self, access_token: str, start: date, end: date
    ) -> TransactionBatch:
        if self.transactions_error is not None:
            raise self.transactions_error
        rows = [
            txn
            for txn in self.transactions[access_token]
            if start.isoformat() <= txn.date <= end.isoformat()
        ]
        return TransactionBatch(
            accounts=list(self.accounts[access_token]),
            transactions=rows,
            total=len(rows),
        )

    def remove_item(self, access_token: str) -> None:
        self.removed.append(access_token)


@pytest.fixture
def aggregator() -> FakeAggregator:
    return FakeAggregator()
