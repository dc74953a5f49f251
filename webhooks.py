"""Typed view of aggregator webhook payloads.

Each ``(webhook_type, webhook_code)`` pair maps to one event class; anything
else becomes ``Unhandled`` so it is still recorded and logged.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from errors import ValidationError

SYNC_CODES = {
    "INITIAL_UPDATE",
    "HISTORICAL_UPDATE",
    "DEFAULT_UPDATE",
    "SYNC_UPDATES_AVAILABLE",
}


@dataclass(frozen=True)
class TransactionsAvailable:
    item_id: str
    code: str
    new_transactions: int = 0


@dataclass(frozen=True)
class TransactionsRemoved:
    item_id: str
    removed_transaction_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ItemError:
    item_id: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PendingExpiration:
    item_id: str
    consent_expiration_time: Optional[str] = None


@dataclass(frozen=True)
class PermissionRevoked:
    item_id: str
    code: str


@dataclass(frozen=True)
class LoginRepaired:
    item_id: str


@dataclass(frozen=True)
class WebhookAcknowledged:
    item_id: str


@dataclass(frozen=True)
class Unhandled:
    item_id: str
    webhook_type: str
    webhook_code: str


AggregatorEvent = Union[
    TransactionsAvailable,
    TransactionsRemoved,
    ItemError,
    PendingExpiration,
    PermissionRevoked,
    LoginRepaired,
    WebhookAcknowledged,
    Unhandled,
]


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def envelope(payload: dict[str, Any]) -> tuple[str, str, str]:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    webhook_type = payload.get("webhook_type")
    webhook_code = payload.get("webhook_code")
    item_id = payload.get("item_id")
    for name, value in (
        ("webhook_type", webhook_type),
        ("webhook_code", webhook_code),
        ("item_id", item_id),
    ):
        if not isinstance(value, str) or not value:
            raise ValidationError(f"Webhook payload is missing {name}")
    return webhook_type.upper(), webhook_code.upper(), item_id


def error_fields(payload: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("error_code"), error.get("error_message")
    if error:
        return None, str(error)
    return None, None


def parse_event(payload: dict[str, Any]) -> AggregatorEvent:
    webhook_type, webhook_code, item_id = envelope(payload)

    if webhook_type == "TRANSACTIONS":
        if webhook_code in SYNC_CODES:
            return TransactionsAvailable(
                item_id=item_id,
                code=webhook_code,
                new_transactions=int(payload.get("new_transactions") or 0),
            )
        if webhook_code == "TRANSACTIONS_REMOVED":
            removed = payload.get("removed_transactions") or []
            return TransactionsRemoved(
                item_id=item_id,
                removed_transaction_ids=tuple(str(value) for value in removed),
            )
    elif webhook_type == "ITEM":
        if webhook_code == "ERROR":
            error_code, error_message = error_fields(payload)
            return ItemError(
                item_id=item_id, error_code=error_code, error_message=error_message
            )
        if webhook_code == "PENDING_EXPIRATION":
            return PendingExpiration(
                item_id=item_id,
                consent_expiration_time=payload.get("consent_expiration_time"),
            )
        if webhook_code in {"USER_PERMISSION_REVOKED", "USER_ACCOUNT_REVOKED"}:
            return PermissionRevoked(item_id=item_id, code=webhook_code)
        if webhook_code == "LOGIN_REPAIRED":
            return LoginRepaired(item_id=item_id)
        if webhook_code == "WEBHOOK_UPDATE_ACKNOWLEDGED":
            return WebhookAcknowledged(item_id=item_id)

    return Unhandled(item_id=item_id, webhook_type=webhook_type, webhook_code=webhook_code)
