"""Port to the bank-data aggregator and its Plaid implementation.

Only idempotent reads (item, accounts, transactions) are retried. Token
exchange and item removal are attempted once; their failures are final.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Optional, Protocol

import plaid
import urllib3
from plaid.api import plaid_api
from plaid.exceptions import ApiException
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.country_code import CountryCode
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.item_remove_request import ItemRemoveRequest
from plaid.model.link_token_create_request import LinkTokenCreateRequest
from plaid.model.link_token_create_request_user import LinkTokenCreateRequestUser
from plaid.model.products import Products
from plaid.model.transactions_get_request import TransactionsGetRequest
from plaid.model.transactions_get_request_options import TransactionsGetRequestOptions

from config import Settings, get_settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

CLIENT_NAME = "Finance Tracker"
PAGE_SIZE = 500
MAX_PAGES = 50


@dataclass(frozen=True)
class LinkHandle:
    link_token: str
    expiration: Optional[str] = None


@dataclass(frozen=True)
class ExchangeResult:
    access_token: str
    item_id: str


@dataclass(frozen=True)
class ItemInfo:
    item_id: str
    institution_id: Optional[str]
    institution_name: Optional[str] = None


@dataclass(frozen=True)
class AggregatorAccount:
    account_id: str
    name: str
    type: str
    official_name: Optional[str] = None
    subtype: Optional[str] = None
    mask: Optional[str] = None
    available_cents: Optional[int] = None
    current_cents: Optional[int] = None
    iso_currency_code: Optional[str] = None


@dataclass(frozen=True)
class AggregatorTransaction:
    """A transaction as the aggregator reports it.

    ``amount`` keeps the aggregator's sign: positive is money leaving the
    account, negative is money coming in.
    """

    transaction_id: str
    account_id: str
    amount: Decimal
    date: str
    name: str
    merchant_name: Optional[str] = None
    category: tuple[str, ...] = ()
    primary_category: Optional[str] = None
    detailed_category: Optional[str] = None
    pending: bool = False
    iso_currency_code: Optional[str] = None


@dataclass
class TransactionBatch:
    accounts: list[AggregatorAccount] = field(default_factory=list)
    transactions: list[AggregatorTransaction] = field(default_factory=list)
    total: int = 0


class AggregatorClient(Protocol):
    def create_link_handle(self, user_id: int) -> LinkHandle: ...

    def exchange(self, public_token: str) -> ExchangeResult: ...

    def get_item(self, access_token: str) -> ItemInfo: ...

    def get_accounts(self, access_token: str) -> list[AggregatorAccount]: ...

    def get_transactions(
        self, access_token: str, start: date, end: date
    ) -> TransactionBatch: ...

    def remove_item(self, access_token: str) -> None: ...


def to_cents(value: Any) -> Optional[int]:
    if value is None:
        return None
    amount = Decimal(str(value)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_day(value: Any) -> str:
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def parse_account(payload: dict[str, Any]) -> AggregatorAccount:
    balances = payload.get("balances") or {}
    return AggregatorAccount(
        account_id=payload["account_id"],
        name=payload.get("name") or "Unknown Account",
        official_name=payload.get("official_name"),
        type=str(payload.get("type") or "other"),
        subtype=str(payload["subtype"]) if payload.get("subtype") else None,
        mask=payload.get("mask"),
        available_cents=to_cents(balances.get("available")),
        current_cents=to_cents(balances.get("current")),
        iso_currency_code=balances.get("iso_currency_code"),
    )


def parse_transaction(payload: dict[str, Any]) -> AggregatorTransaction:
    pfc = payload.get("personal_finance_category") or {}
    return AggregatorTransaction(
        transaction_id=payload["transaction_id"],
        account_id=payload["account_id"],
        amount=Decimal(str(payload["amount"])),
        date=_as_day(payload["date"]),
        name=payload.get("name") or "",
        merchant_name=payload.get("merchant_name"),
        category=tuple(payload.get("category") or ()),
        primary_category=pfc.get("primary"),
        detailed_category=pfc.get("detailed"),
        pending=bool(payload.get("pending")),
        iso_currency_code=payload.get("iso_currency_code"),
    )


def _error_from_api(operation: str, exc: ApiException) -> ExternalServiceError:
    aggregator_code = None
    request_id = None
    message = f"Aggregator call '{operation}' failed"
    try:
        body = json.loads(exc.body or "{}")
    except (TypeError, ValueError):
        body = {}
    if isinstance(body, dict):
        aggregator_code = body.get("error_code")
        request_id = body.get("request_id")
        if body.get("error_message"):
            message = f"{message}: {body['error_message']}"
    status = exc.status or 0
    return ExternalServiceError(
        message,
        operation=operation,
        aggregator_code=aggregator_code,
        request_id=request_id,
        retryable=status >= 500 or status == 429,
    )


def _environment_host(name: str) -> str:
    if (name or "").lower() == "production":
        return plaid.Environment.Production
    return plaid.Environment.Sandbox


class PlaidAggregatorClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        api: Optional[plaid_api.PlaidApi] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        if api is None:
            if not self.settings.aggregator_client_id or not self.settings.aggregator_secret:
                raise RuntimeError("Aggregator credentials are not configured")
            configuration = plaid.Configuration(
                host=_environment_host(self.settings.aggregator_env),
                api_key={
                    "clientId": self.settings.aggregator_client_id,
                    "secret": self.settings.aggregator_secret,
                },
            )
            api = plaid_api.PlaidApi(plaid.ApiClient(configuration))
        self.api = api
        self._sleep = sleep

    def _call(self, operation: str, method: Callable[..., Any], request: Any, *, retry: bool) -> Any:
        attempts = max(1, self.settings.aggregator_max_retries) if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                return method(request, _request_timeout=self.settings.aggregator_timeout_secs)
            except ApiException as exc:
                error = _error_from_api(operation, exc)
                if not error.retryable or attempt >= attempts:
                    raise error from exc
            except urllib3.exceptions.HTTPError as exc:
                error = ExternalServiceError(
                    f"Aggregator call '{operation}' could not reach the service",
                    operation=operation,
                    retryable=True,
                )
                if attempt >= attempts:
                    raise error from exc
            delay = self.settings.aggregator_backoff_secs * (2 ** (attempt - 1))
            logger.warning(
                f"aggregator_retry: operation={operation} attempt={attempt} "
                f"code={error.aggregator_code} delay={delay:.2f}s"
            )
            self._sleep(delay)
        raise AssertionError("unreachable")

    def create_link_handle(self, user_id: int) -> LinkHandle:
        kwargs: dict[str, Any] = {
            "products": [Products("transactions")],
            "client_name": CLIENT_NAME,
            "country_codes": [CountryCode("US")],
            "language": "en",
            "user": LinkTokenCreateRequestUser(client_user_id=str(user_id)),
        }
        if self.settings.link_redirect_uri:
            kwargs["redirect_uri"] = self.settings.link_redirect_uri
        if self.settings.webhook_url:
            kwargs["webhook"] = self.settings.webhook_url
        response = self._call(
            "link_token_create",
            self.api.link_token_create,
            LinkTokenCreateRequest(**kwargs),
            retry=False,
        ).to_dict()
        expiration = response.get("expiration")
        return LinkHandle(
            link_token=response["link_token"],
            expiration=str(expiration) if expiration else None,
        )

    def exchange(self, public_token: str) -> ExchangeResult:
        response = self._call(
            "item_public_token_exchange",
            self.api.item_public_token_exchange,
            ItemPublicTokenExchangeRequest(public_token=public_token),
            retry=False,
        ).to_dict()
        return ExchangeResult(
            access_token=response["access_token"], item_id=response["item_id"]
        )

    def get_item(self, access_token: str) -> ItemInfo:
        response = self._call(
            "item_get",
            self.api.item_get,
            ItemGetRequest(access_token=access_token),
            retry=True,
        ).to_dict()
        item = response["item"]
        institution_id = item.get("institution_id")
        institution_name = None
        if institution_id:
            institution = self._call(
                "institutions_get_by_id",
                self.api.institutions_get_by_id,
                InstitutionsGetByIdRequest(
                    institution_id=institution_id, country_codes=[CountryCode("US")]
                ),
                retry=True,
            ).to_dict()
            institution_name = (institution.get("institution") or {}).get("name")
        return ItemInfo(
            item_id=item["item_id"],
            institution_id=institution_id,
            institution_name=institution_name,
        )

    def get_accounts(self, access_token: str) -> list[AggregatorAccount]:
        response = self._call(
            "accounts_get",
            self.api.accounts_get,
            AccountsGetRequest(access_token=access_token),
            retry=True,
        ).to_dict()
        return [parse_account(account) for account in response.get("accounts", [])]

    def get_transactions(self, access_token: str, start: date, end: date) -> TransactionBatch:
        batch = TransactionBatch()
        for _ in range(MAX_PAGES):
            request = TransactionsGetRequest(
                access_token=access_token,
                start_date=start,
                end_date=end,
                options=TransactionsGetRequestOptions(
                    count=PAGE_SIZE,
                    offset=len(batch.transactions),
                    include_personal_finance_category=True,
                ),
            )
            response = self._call(
                "transactions_get", self.api.transactions_get, request, retry=True
            ).to_dict()
            if not batch.accounts:
                batch.accounts = [
                    parse_account(account) for account in response.get("accounts", [])
                ]
            page = response.get("transactions", [])
            batch.transactions.extend(parse_transaction(txn) for txn in page)
            batch.total = int(response.get("total_transactions") or 0)
            if not page or len(batch.transactions) >= batch.total:
                break
        return batch

    def remove_item(self, access_token: str) -> None:
        self._call(
            "item_remove",
            self.api.item_remove,
            ItemRemoveRequest(access_token=access_token),
            retry=False,
        )
