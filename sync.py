from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from aggregator import (
    AggregatorAccount,
    AggregatorClient,
    AggregatorTransaction,
    LinkHandle,
    to_cents,
)
from config import Settings, get_settings
from crypto import CredentialVault, fingerprint
from errors import (
    ConflictError,
    ExternalServiceError,
    FinanceError,
    NotFoundError,
    ValidationError,
)
from models import (
    Direction,
    ExternalAccount,
    ExternalAccountLink,
    LinkStatus,
    Origin,
    WebhookEvent,
)
from periods import local_today
from services import CategoryService, TransactionService, invalidate_score
from webhooks import (
    AggregatorEvent,
    ItemError,
    LoginRepaired,
    PendingExpiration,
    PermissionRevoked,
    TransactionsAvailable,
    TransactionsRemoved,
    Unhandled,
    WebhookAcknowledged,
    canonical_json,
    envelope,
    error_fields,
    parse_event,
)

logger = logging.getLogger(__name__)

MANUAL_LOOKBACK_DAYS = 90
UNKNOWN_ACCOUNT = "Unknown Account"
SYNCABLE = {LinkStatus.active, LinkStatus.pending_expiration}

TRANSITIONS: dict[LinkStatus, set[LinkStatus]] = {
    LinkStatus.active: {
        LinkStatus.error,
        LinkStatus.disconnected,
        LinkStatus.pending_expiration,
    },
    LinkStatus.pending_expiration: {
        LinkStatus.active,
        LinkStatus.disconnected,
        LinkStatus.error,
    },
    LinkStatus.error: {LinkStatus.active, LinkStatus.disconnected},
    LinkStatus.disconnected: set(),
}


@dataclass
class SyncResult:
    fetched: int = 0
    added: int = 0
    flagged: int = 0
    skipped: int = 0
    removed: int = 0
    warnings: list[str] = field(default_factory=list)


def _humanize(label: str) -> str:
    return label.replace("_", " ").strip().title()


def map_transaction(
    item: AggregatorTransaction, account_names: Optional[dict[str, str]] = None
) -> Optional[dict[str, Any]]:
    """Turn an aggregator transaction into ledger values.

    Positive aggregator amounts are money leaving the account (expense),
    negative amounts are money coming in (income). Zero amounts are dropped.
    """
    if item.amount == 0:
        return None
    direction = Direction.expense if item.amount > 0 else Direction.income
    if item.category:
        category = item.category[0]
        subcategory = item.category[1] if len(item.category) > 1 else None
    elif item.primary_category:
        category = _humanize(item.primary_category)
        subcategory = _humanize(item.detailed_category) if item.detailed_category else None
    else:
        category = "Uncategorized"
        subcategory = None
    return {
        "amount_cents": to_cents(abs(item.amount)),
        "direction": direction,
        "category": category,
        "subcategory": subcategory,
        "merchant": item.merchant_name or item.name or "Unknown",
        "account": (account_names or {}).get(item.account_id) or UNKNOWN_ACCOUNT,
        "occurred_on": item.date,
    }


class ExternalSyncReconciler:
    def __init__(
        self,
        session: Session,
        client: AggregatorClient,
        vault: Optional[CredentialVault] = None,
        settings: Optional[Settings] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.client = client
        self.settings = settings or get_settings()
        self.vault = vault or CredentialVault(self.settings)
        self.today = today

    # Links

    def create_link_handle(self, user_id: int) -> LinkHandle:
        return self.client.create_link_handle(user_id)

    def list_links(self, user_id: int) -> list[ExternalAccountLink]:
        stmt = (
            select(ExternalAccountLink)
            .options(selectinload(ExternalAccountLink.accounts))
            .where(ExternalAccountLink.user_id == user_id)
            .order_by(ExternalAccountLink.id)
        )
        return self.session.scalars(stmt).all()

    def get_link(self, user_id: int, item_id: str) -> ExternalAccountLink:
        link = self.session.scalar(
            select(ExternalAccountLink).where(ExternalAccountLink.item_id == item_id)
        )
        if not link or link.user_id != user_id:
            raise NotFoundError("Link not found")
        return link

    def _ensure_new_institution(self, user_id: int, institution_id: str) -> None:
        existing = self.session.scalar(
            select(ExternalAccountLink.id).where(
                ExternalAccountLink.user_id == user_id,
                ExternalAccountLink.institution_id == institution_id,
                ExternalAccountLink.status != LinkStatus.disconnected,
            )
        )
        if existing is not None:
            raise ConflictError(
                "This institution is already linked", code="DUPLICATE_LINK"
            )

    def _revoke(self, access_token: str) -> None:
        try:
            self.client.remove_item(access_token)
        except ExternalServiceError as exc:
            logger.error(
                f"link_revoke_failed: credential={fingerprint(access_token)} "
                f"code={exc.aggregator_code} request_id={exc.request_id}"
            )

    def exchange_token(
        self,
        user_id: int,
        public_token: str,
        institution_id: Optional[str] = None,
        institution_name: Optional[str] = None,
    ) -> ExternalAccountLink:
        if institution_id:
            self._ensure_new_institution(user_id, institution_id)

        exchange = self.client.exchange(public_token)
        try:
            item = self.client.get_item(exchange.access_token)
            resolved_institution = item.institution_id or institution_id
            if resolved_institution:
                self._ensure_new_institution(user_id, resolved_institution)
            accounts = self.client.get_accounts(exchange.access_token)
        except (ConflictError, ExternalServiceError):
            self._revoke(exchange.access_token)
            raise

        link = ExternalAccountLink(
            user_id=user_id,
            item_id=exchange.item_id,
            access_credential_encrypted=self.vault.encrypt(exchange.access_token),
            credential_fingerprint=fingerprint(exchange.access_token),
            institution_id=resolved_institution,
            institution_name=institution_name or item.institution_name,
            status=LinkStatus.active,
        )
        self.session.add(link)
        self.session.flush()
        self._upsert_accounts(link, accounts)
        self.session.commit()
        self.session.refresh(link)
        logger.info(
            f"link_created: user={user_id} item={link.item_id} "
            f"institution={link.institution_id} credential={link.credential_fingerprint} "
            f"accounts={len(accounts)}"
        )
        return link

    def _upsert_accounts(
        self, link: ExternalAccountLink, accounts: Iterable[AggregatorAccount]
    ) -> None:
        for account in accounts:
            row = self.session.scalar(
                select(ExternalAccount).where(
                    ExternalAccount.account_id == account.account_id
                )
            )
            if row is None:
                row = ExternalAccount(account_id=account.account_id)
                self.session.add(row)
            row.user_id = link.user_id
            row.link_id = link.id
            row.name = account.name
            row.official_name = account.official_name
            row.type = account.type
            row.subtype = account.subtype
            row.mask = account.mask
            row.available_balance_cents = account.available_cents
            row.current_balance_cents = account.current_cents
            row.iso_currency_code = account.iso_currency_code
        self.session.flush()

    def remove_link(self, user_id: int, item_id: str) -> ExternalAccountLink:
        link = self.get_link(user_id, item_id)
        if link.status == LinkStatus.disconnected:
            return link
        self.client.remove_item(self.vault.decrypt(link.access_credential_encrypted))
        previous = link.status
        link.status = LinkStatus.disconnected
        self.session.commit()
        self.session.refresh(link)
        logger.info(
            f"link_removed: user={user_id} item={item_id} from={previous.value} "
            f"credential={link.credential_fingerprint}"
        )
        return link

    def refresh_link(self, user_id: int, item_id: str) -> SyncResult:
        link = self.get_link(user_id, item_id)
        if link.status not in SYNCABLE:
            raise ValidationError(f"Link is {link.status.value} and cannot be refreshed")
        return self.sync_link(link, lookback_days=MANUAL_LOOKBACK_DAYS)

    def transition(
        self, link: ExternalAccountLink, target: LinkStatus, error: Optional[str] = None
    ) -> bool:
        current = LinkStatus(link.status)
        if target == current:
            return False
        if target not in TRANSITIONS[current]:
            logger.warning(
                f"link_transition_ignored: item={link.item_id} "
                f"from={current.value} to={target.value}"
            )
            return False
        link.status = target
        if target == LinkStatus.error:
            link.last_error = error
        elif target == LinkStatus.active:
            link.last_error = None
        logger.info(
            f"link_transition: item={link.item_id} from={current.value} to={target.value}"
        )
        return True

    # Transactions

    def sync_link(
        self, link: ExternalAccountLink, lookback_days: Optional[int] = None
    ) -> SyncResult:
        result = SyncResult()
        if link.status not in SYNCABLE:
            logger.info(f"sync_skipped: item={link.item_id} status={link.status.value}")
            return result

        today = self.today or local_today()
        start = today - timedelta(days=lookback_days or self.settings.sync_lookback_days)
        access_token = self.vault.decrypt(link.access_credential_encrypted)
        batch = self.client.get_transactions(access_token, start, today)
        result.fetched = len(batch.transactions)

        self._upsert_accounts(link, batch.accounts)
        account_names = {account.account_id: account.name for account in batch.accounts}
        for account in link.accounts:
            account_names.setdefault(account.account_id, account.name)

        service = TransactionService(self.session, link.user_id)
        categories = CategoryService(self.session, link.user_id)
        known = service.ledger.known_external_ids(
            item.transaction_id for item in batch.transactions
        )
        for item in batch.transactions:
            if item.pending or item.transaction_id in known:
                result.skipped += 1
                continue
            values = map_transaction(item, account_names)
            if values is None:
                result.skipped += 1
                continue
            values["category"] = categories.match_label(values["category"])
            try:
                clean = service.ledger.validate_new(values)
                if self.settings.skip_flagged_bank_duplicates and service.check_duplicate(clean):
                    result.flagged += 1
                    result.skipped += 1
                    continue
                txn, warnings = service.record(
                    clean,
                    origin=Origin.bank_sync,
                    external_transaction_id=item.transaction_id,
                    external_account_id=item.account_id,
                )
            except FinanceError as exc:
                logger.warning(
                    f"sync_row_rejected: item={link.item_id} "
                    f"transaction={item.transaction_id} error={exc.message}"
                )
                result.skipped += 1
                continue
            known.add(item.transaction_id)
            result.added += 1
            result.flagged += int(txn.possible_duplicate)
            result.warnings.extend(warning.message for warning in warnings)

        link.last_synced_at = datetime.utcnow()
        if result.added:
            invalidate_score(self.session, link.user_id)
        self.session.commit()
        logger.info(
            f"sync_run: item={link.item_id} fetched={result.fetched} added={result.added} "
            f"flagged={result.flagged} skipped={result.skipped}"
        )
        return result

    def remove_transactions(
        self, link: ExternalAccountLink, external_ids: Iterable[str]
    ) -> SyncResult:
        service = TransactionService(self.session, link.user_id)
        result = SyncResult()
        for entry in service.ledger.remove_external(external_ids):
            result.removed += 1
            result.warnings.extend(
                warning.message for warning in service.maintainer.record_deleted(entry)
            )
        if result.removed:
            invalidate_score(self.session, link.user_id)
        self.session.commit()
        logger.info(f"sync_removed: item={link.item_id} removed={result.removed}")
        return result

    # Webhooks

    def record_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        """Persist an inbound webhook before any processing.

        Every delivery gets its own row. Aggregator webhooks carry no event
        id and identical bodies are routinely distinct notifications, so
        repeats are absorbed downstream: transactions are unique per
        external id and lifecycle transitions to the current state are no-ops.
        """
        webhook_type, webhook_code, item_id = envelope(payload)
        error_code, error_message = error_fields(payload)
        removed = payload.get("removed_transactions")
        event = WebhookEvent(
            webhook_type=webhook_type,
            webhook_code=webhook_code,
            item_id=item_id,
            account_id=payload.get("account_id"),
            error=error_code or error_message,
            new_transactions_count=payload.get("new_transactions"),
            removed_transactions_count=len(removed) if isinstance(removed, list) else None,
            request_id=payload.get("request_id"),
            raw_payload=canonical_json(payload),
        )
        self.session.add(event)
        self.session.commit()
        logger.info(
            f"webhook_recorded: event={event.id} type={webhook_type} "
            f"code={webhook_code} item={item_id}"
        )
        return event

    def _link_for_item(self, item_id: str) -> Optional[ExternalAccountLink]:
        return self.session.scalar(
            select(ExternalAccountLink).where(ExternalAccountLink.item_id == item_id)
        )

    def dispatch(self, event: AggregatorEvent) -> Optional[str]:
        """Apply one webhook. Returns a note to keep on the event, if any."""
        link = self._link_for_item(event.item_id)
        if link is None:
            logger.warning(f"webhook_unknown_item: item={event.item_id}")
            return "Unknown item"
        if link.status == LinkStatus.disconnected:
            logger.info(f"webhook_ignored: item={link.item_id} status=disconnected")
            return "Link disconnected"

        if isinstance(event, TransactionsAvailable):
            if link.status not in SYNCABLE:
                return f"Link is {link.status.value}"
            self.sync_link(link)
        elif isinstance(event, TransactionsRemoved):
            self.remove_transactions(link, event.removed_transaction_ids)
        elif isinstance(event, ItemError):
            self.transition(
                link, LinkStatus.error, event.error_message or event.error_code
            )
        elif isinstance(event, PendingExpiration):
            self.transition(link, LinkStatus.pending_expiration)
        elif isinstance(event, PermissionRevoked):
            self.transition(link, LinkStatus.disconnected)
        elif isinstance(event, LoginRepaired):
            self.transition(link, LinkStatus.active)
        elif isinstance(event, WebhookAcknowledged):
            logger.info(f"webhook_acknowledged: item={link.item_id}")
        elif isinstance(event, Unhandled):
            logger.warning(
                f"webhook_unhandled: item={event.item_id} "
                f"type={event.webhook_type} code={event.webhook_code}"
            )
            return f"Unhandled {event.webhook_type}/{event.webhook_code}"
        return None

    def process_event(self, event_id: int) -> WebhookEvent:
        record = self.session.get(WebhookEvent, event_id)
        if record is None:
            raise NotFoundError("Webhook event not found")
        if record.processed:
            return record

        try:
            note = self.dispatch(parse_event(json.loads(record.raw_payload)))
        except Exception as exc:
            self.session.rollback()
            record = self.session.get(WebhookEvent, event_id)
            record.attempts += 1
            record.last_error = str(exc)[:1000]
            self.session.commit()
            logger.exception(
                f"webhook_failed: event={event_id} item={record.item_id} "
                f"attempts={record.attempts}"
            )
            return record

        record.attempts += 1
        record.processed = True
        record.processed_at = datetime.utcnow()
        record.last_error = note
        self.session.commit()
        logger.info(f"webhook_processed: event={event_id} item={record.item_id}")
        return record

    def replay_pending(
        self, limit: int = 100, user_id: Optional[int] = None
    ) -> dict[str, int]:
        """Retry unprocessed events in arrival order.

        With ``user_id`` only events for that user's linked items are touched.
        """
        stmt = (
            select(WebhookEvent.id)
            .where(WebhookEvent.processed.is_(False))
            .order_by(WebhookEvent.id)
            .limit(limit)
        )
        if user_id is not None:
            stmt = stmt.where(
                WebhookEvent.item_id.in_(
                    select(ExternalAccountLink.item_id).where(
                        ExternalAccountLink.user_id == user_id
                    )
                )
            )
        processed = 0
        failed = 0
        for event_id in self.session.scalars(stmt).all():
            if self.process_event(event_id).processed:
                processed += 1
            else:
                failed += 1
        logger.info(
            f"webhook_replay: user={user_id} processed={processed} failed={failed}"
        )
        return {"processed": processed, "failed": failed}
