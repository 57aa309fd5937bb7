from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import uuid4

from loguru import logger

from .dates import extend, settlement_period, utcnow
from .models import (
    KNOWN_TIERS,
    EXTENSION_CONTEXT,
    PAYMENT_CONTEXT,
    Account,
    AccountBalance,
    AccountStatus,
    ExtensionRequest,
    ExtensionSettlement,
    ExtensionStatus,
    LedgerEntry,
    LedgerEntryStatus,
    LedgerEntryType,
    PaymentSettlement,
    SettlementContext,
    TierRate,
    to_money,
)
from .storage import (
    AccountLocks,
    AccountStore,
    ExtensionRequestStore,
    InMemoryAccountStore,
    InMemoryExtensionRequestStore,
    InMemoryLedgerStore,
    InMemoryPricingStore,
    InMemoryStorage,
    LedgerStore,
    PricingStore,
    StoreError,
)


class SettlementError(Exception):
    pass


class NotFoundError(SettlementError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class ExtensionRequestNotFoundError(NotFoundError):
    pass


class ConfigurationError(SettlementError):
    pass


class DependencyFailure(SettlementError):
    """A store call failed or timed out. Safe to retry with the same trigger id."""


class AlreadySettledError(SettlementError):
    pass


BONUS_TYPES = (LedgerEntryType.REFERRAL_BONUS, LedgerEntryType.REFERRAL_BONUS_EXTENSION)
PAYMENT_REF_PREFIX = "payment:"


def percentage_of(base: Decimal, percentage: Decimal) -> Decimal:
    return to_money(base * percentage / Decimal(100))


@dataclass
class _Credits:
    target: Account
    target_rate: TierRate
    referrer: Optional[Account]
    referrer_rate: Optional[TierRate]
    referral_bonus: Decimal
    cashback: Decimal


class SettlementService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        *,
        accounts: Optional[AccountStore] = None,
        pricing: Optional[PricingStore] = None,
        ledger: Optional[LedgerStore] = None,
        extensions: Optional[ExtensionRequestStore] = None,
        locks: Optional[AccountLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage or InMemoryStorage()
        self.accounts = accounts or InMemoryAccountStore(self.storage)
        self.pricing = pricing or InMemoryPricingStore(self.storage)
        self.ledger = ledger or InMemoryLedgerStore(self.storage)
        self.extensions = extensions or InMemoryExtensionRequestStore(self.storage)
        self.locks = locks or AccountLocks()
        self.clock = clock

    def settle_payment(self, account_id: str) -> PaymentSettlement:
        """Mark an account as paid, extend its subscription and credit referral rewards.

        Every write before the final status change is idempotent, so a call that
        failed with DependencyFailure can be repeated. Once the account is paid a
        repeat call is rejected instead of crediting the referrer twice.
        """
        with self._store_calls("settle_payment", account_id):
            referred_by = self._get_account(account_id).referred_by
            with self.locks.hold(account_id, referred_by):
                target = self._get_account(account_id)
                if target.status == AccountStatus.PAID:
                    raise AlreadySettledError(f"Account {account_id} is already paid")

                now = self.clock()
                credits = self._compute_credits(target, PAYMENT_CONTEXT)
                new_expiry = extend(target.subscription_expires_at, now)
                final = {"status": AccountStatus.PAID, "subscription_expires_at": new_expiry}

                period = self._pinned_payment_period(target)
                if period is None and (credits.referral_bonus > 0 or credits.cashback > 0):
                    # Period is pinned before any row lands; a retry on a later day reuses it.
                    period = settlement_period(now)
                    self.accounts.update(account_id, {
                        "last_settlement_ref": f"{PAYMENT_REF_PREFIX}{period.isoformat()}",
                    })
                if period is not None:
                    final["last_settlement_ref"] = None

                entries = self._apply_credits(
                    credits, PAYMENT_CONTEXT, reference_id=account_id, now=now,
                    period=period or settlement_period(now),
                )
                account = self.accounts.update(account_id, final)

        referrer_id = credits.referrer.id if credits.referrer else None
        logger.info(
            "Settled payment",
            account_id=account_id,
            referrer_id=referrer_id,
            referral_bonus=str(credits.referral_bonus),
            cashback=str(credits.cashback),
            new_expiry=new_expiry.isoformat(),
        )
        return PaymentSettlement(
            account=account,
            new_expiry=new_expiry,
            referral_bonus_amount=credits.referral_bonus,
            cashback_amount=credits.cashback,
            referrer_id=referrer_id,
            ledger_entries=entries,
        )

    def settle_extension(self, extension_id: str) -> ExtensionSettlement:
        """Approve a pending extension request and settle it like a payment.

        Cashback is limited to Pro members on this path. The request only moves
        to approved after the expiry and credits have been written.
        """
        with self._store_calls("settle_extension", extension_id):
            request = self._get_extension(extension_id)
            preview = self._get_account(request.user_id)
            with self.locks.hold(f"extension:{extension_id}", preview.id, preview.referred_by):
                request = self._get_extension(extension_id)
                if request.status != ExtensionStatus.PENDING:
                    raise AlreadySettledError(
                        f"Extension request {extension_id} is already {request.status.value}"
                    )

                target = self._get_account(request.user_id)
                now = self.clock()
                credits = self._compute_credits(target, EXTENSION_CONTEXT)
                entries = self._apply_credits(
                    credits, EXTENSION_CONTEXT, reference_id=extension_id, now=now, period=settlement_period(now),
                )

                if target.last_settlement_ref == extension_id and target.subscription_expires_at:
                    # Expiry already moved by an earlier attempt that failed before approval.
                    new_expiry = target.subscription_expires_at
                else:
                    new_expiry = extend(target.subscription_expires_at, now)
                    self.accounts.update(target.id, {
                        "subscription_expires_at": new_expiry,
                        "last_settlement_ref": extension_id,
                    })

                self.extensions.update(extension_id, {"status": ExtensionStatus.APPROVED})

        referrer_id = credits.referrer.id if credits.referrer else None
        logger.info(
            "Settled extension request",
            extension_id=extension_id,
            account_id=request.user_id,
            referrer_id=referrer_id,
            referral_bonus=str(credits.referral_bonus),
            cashback=str(credits.cashback),
            new_expiry=new_expiry.isoformat(),
        )
        return ExtensionSettlement(
            extension_id=extension_id,
            new_expiry=new_expiry,
            referral_bonus=credits.referral_bonus,
            cashback=credits.cashback,
            referrer_id=referrer_id,
            ledger_entries=entries,
        )

    def get_balance(self, account_id: str) -> AccountBalance:
        with self._store_calls("get_balance", account_id):
            account = self._get_account(account_id)
            entries = self.ledger.list_for_account(account_id)

        last_entry = max(entries, key=lambda e: e.created_at) if entries else None
        return AccountBalance(
            account_id=account_id,
            cached_balance=to_money(account.balance),
            ledger_balance=self._project_balance(entries),
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def reconcile_balance(self, account_id: str) -> AccountBalance:
        """Rewrite the cached balance from the ledger."""
        with self._store_calls("reconcile_balance", account_id):
            with self.locks.hold(account_id):
                before = self.get_balance(account_id)
                if not before.in_sync:
                    logger.warning(
                        "Cached balance drifted from ledger",
                        account_id=account_id,
                        cached_balance=str(before.cached_balance),
                        ledger_balance=str(before.ledger_balance),
                    )
                    self._write_projected_balance(account_id)
                return self.get_balance(account_id)

    def _compute_credits(self, target: Account, context: SettlementContext) -> _Credits:
        price = self.pricing.get_active_price()
        if price is None:
            raise ConfigurationError("Active subscription price not found")

        referrer = None
        if target.referred_by == target.id:
            logger.warning("Ignoring self-referral", account_id=target.id)
        elif target.referred_by:
            referrer = self.accounts.get(target.referred_by)
            if referrer is None:
                raise AccountNotFoundError(
                    f"Referrer {target.referred_by} of account {target.id} not found"
                )

        tier_names = [*KNOWN_TIERS, target.tier]
        if referrer:
            tier_names.append(referrer.tier)
        rates = self.pricing.get_rates(list(dict.fromkeys(tier_names)))
        if not rates:
            raise ConfigurationError("No tier rates configured")

        target_rate = rates.get(target.tier) or TierRate.zero(target.tier)
        referrer_rate = None
        referral_bonus = Decimal("0.00")
        cashback = Decimal("0.00")
        base = Decimal(price.price_cents)

        # Referral bonus and cashback both require the member to have been referred.
        if referrer:
            referrer_rate = rates.get(referrer.tier) or TierRate.zero(referrer.tier)
            referral_bonus = percentage_of(base, referrer_rate.referral_bonus_percentage)
            if context.cashback_allowed(target.tier):
                cashback = percentage_of(base, target_rate.cashback_percentage)

        return _Credits(
            target=target,
            target_rate=target_rate,
            referrer=referrer,
            referrer_rate=referrer_rate,
            referral_bonus=referral_bonus,
            cashback=cashback,
        )

    def _apply_credits(
        self, credits: _Credits, context: SettlementContext, reference_id: str, now: datetime, period: date
    ) -> list[LedgerEntry]:
        rows = []
        if credits.referrer and credits.referral_bonus > 0:
            rows.append(self._build_entry(
                credits.referrer,
                context.entry_type("referral_bonus"),
                credits.referral_bonus,
                credits.referrer_rate.referral_bonus_percentage,
                reference_id, period, now, context,
            ))
        if credits.cashback > 0:
            rows.append(self._build_entry(
                credits.target,
                context.entry_type("cashback"),
                credits.cashback,
                credits.target_rate.cashback_percentage,
                reference_id, period, now, context,
            ))

        fresh = [
            row for row in rows
            if not self.ledger.exists(
                row.user_id, row.type, row.reference_id,
                source_period=row.source_period if context.dedup_by_period else None,
            )
        ]
        if len(fresh) < len(rows):
            logger.info(
                "Skipping ledger rows recorded by an earlier attempt",
                reference_id=reference_id,
                skipped=len(rows) - len(fresh),
            )
        if fresh:
            self.ledger.append(fresh)

        for row in fresh:
            # Counter moves with the bonus row that is appended, never on a replay.
            if row.type in BONUS_TYPES:
                self.accounts.update(credits.referrer.id, {
                    "monthly_referral_count": credits.referrer.monthly_referral_count + 1,
                })

        for account_id in dict.fromkeys(row.user_id for row in rows):
            self._write_projected_balance(account_id)
        return fresh

    def _build_entry(
        self,
        account: Account,
        entry_type: LedgerEntryType,
        amount: Decimal,
        percentage: Decimal,
        reference_id: str,
        period: date,
        now: datetime,
        context: SettlementContext,
    ) -> LedgerEntry:
        key = f"{entry_type.value}:{account.id}:{reference_id}"
        if context.dedup_by_period:
            key = f"{key}:{period.isoformat()}"
        return LedgerEntry(
            id=str(uuid4()),
            user_id=account.id,
            type=entry_type,
            amount=amount,
            status=LedgerEntryStatus.COMPLETED,
            source_period=period,
            applied_percentage=percentage,
            tier_at_time=account.tier,
            reference_id=reference_id,
            idempotency_key=key,
            created_at=now,
        )

    @staticmethod
    def _pinned_payment_period(account: Account) -> Optional[date]:
        ref = account.last_settlement_ref
        if ref and ref.startswith(PAYMENT_REF_PREFIX):
            return date.fromisoformat(ref[len(PAYMENT_REF_PREFIX):])
        return None

    def _write_projected_balance(self, account_id: str) -> Account:
        balance = self._project_balance(self.ledger.list_for_account(account_id))
        return self.accounts.update(account_id, {"balance": balance})

    @staticmethod
    def _project_balance(entries: list[LedgerEntry]) -> Decimal:
        total = sum(
            (e.signed_amount for e in entries if e.status == LedgerEntryStatus.COMPLETED),
            Decimal("0"),
        )
        return to_money(total)

    def _get_account(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _get_extension(self, extension_id: str) -> ExtensionRequest:
        request = self.extensions.get(extension_id)
        if request is None:
            raise ExtensionRequestNotFoundError(f"Extension request {extension_id} not found")
        return request

    @contextmanager
    def _store_calls(self, operation: str, reference: str) -> Iterator[None]:
        try:
            yield
        except StoreError as exc:
            logger.error("Store call failed", operation=operation, reference=reference, error=str(exc))
            raise DependencyFailure(f"{operation} failed for {reference}: {exc}") from exc
