import threading
from contextlib import ExitStack, contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional, Protocol, Sequence

from loguru import logger

from .models import (
    Account,
    ExtensionRequest,
    LedgerEntry,
    LedgerEntryType,
    SubscriptionPrice,
    TierRate,
    to_money,
)


class StoreError(Exception):
    """Raised by a store when the backing service fails to read or write."""


class AccountStore(Protocol):
    def get(self, account_id: str) -> Optional[Account]: ...

    def update(self, account_id: str, patch: dict) -> Account: ...

    def referral_code_exists(self, code: str) -> bool: ...


class PricingStore(Protocol):
    def get_active_price(self) -> Optional[SubscriptionPrice]: ...

    def get_rates(self, tier_names: Sequence[str]) -> dict[str, TierRate]: ...


class LedgerStore(Protocol):
    def append(self, rows: Sequence[LedgerEntry]) -> list[LedgerEntry]: ...

    def exists(
        self,
        user_id: str,
        entry_type: LedgerEntryType,
        reference_id: Optional[str],
        source_period: Optional[date] = None,
    ) -> bool:
        """True when a matching row exists. A None period matches rows from any period."""
        ...

    def list_for_account(self, user_id: str) -> list[LedgerEntry]: ...


class ExtensionRequestStore(Protocol):
    def get(self, extension_id: str) -> Optional[ExtensionRequest]: ...

    def update(self, extension_id: str, patch: dict) -> ExtensionRequest: ...


def _to_row_value(value):
    # Amounts are persisted as strings, the same way the hosted users table keeps them.
    if isinstance(value, Decimal):
        return str(to_money(value))
    if isinstance(value, Enum):
        return value.value
    return value


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.users: dict[str, dict] = {}
        self.tiers: dict[str, dict] = {}
        self.subscription_prices: dict[str, dict] = {}
        self.extension_requests: dict[str, dict] = {}
        self.ledger_entries: list[dict] = []
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.tiers["Rookie"] = {
            "tier_name": "Rookie", "min_referrals": 0,
            "referral_bonus_percentage": "10", "cashback_percentage": "0",
        }
        self.tiers["Pro"] = {
            "tier_name": "Pro", "min_referrals": 10,
            "referral_bonus_percentage": "15", "cashback_percentage": "5",
        }
        self.tiers["Legend"] = {
            "tier_name": "Legend", "min_referrals": 25,
            "referral_bonus_percentage": "20", "cashback_percentage": "10",
        }
        self.subscription_prices["monthly"] = {
            "id": "monthly", "name": "Monthly membership",
            "price_cents": 100000, "currency": "IDR",
            "interval": "month", "active": True,
        }

    def add_account(self, account: Account) -> Account:
        self.users[account.id] = {key: _to_row_value(value) for key, value in account.model_dump().items()}
        return account

    def add_tier(self, rate: TierRate) -> TierRate:
        self.tiers[rate.tier_name] = {key: _to_row_value(value) for key, value in rate.model_dump().items()}
        return rate

    def add_price(self, price: SubscriptionPrice) -> SubscriptionPrice:
        self.subscription_prices[price.id] = price.model_dump()
        return price

    def add_extension_request(self, request: ExtensionRequest) -> ExtensionRequest:
        self.extension_requests[request.id] = {
            key: _to_row_value(value) for key, value in request.model_dump().items()
        }
        return request


class InMemoryAccountStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get(self, account_id: str) -> Optional[Account]:
        row = self.storage.users.get(account_id)
        return Account(**row) if row else None

    def update(self, account_id: str, patch: dict) -> Account:
        row = self.storage.users.get(account_id)
        if row is None:
            raise StoreError(f"users row {account_id} does not exist")
        row.update({key: _to_row_value(value) for key, value in patch.items()})
        return Account(**row)

    def referral_code_exists(self, code: str) -> bool:
        return any(row.get("referral_code") == code for row in self.storage.users.values())


class InMemoryPricingStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get_active_price(self) -> Optional[SubscriptionPrice]:
        active = [row for row in self.storage.subscription_prices.values() if row.get("active")]
        if len(active) > 1:
            logger.warning("Several active subscription prices", price_ids=[row["id"] for row in active])
            return None
        return SubscriptionPrice(**active[0]) if active else None

    def get_rates(self, tier_names: Sequence[str]) -> dict[str, TierRate]:
        return {
            name: TierRate(**self.storage.tiers[name])
            for name in dict.fromkeys(tier_names)
            if name in self.storage.tiers
        }


class InMemoryLedgerStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def append(self, rows: Sequence[LedgerEntry]) -> list[LedgerEntry]:
        self.storage.ledger_entries.extend(row.model_dump() for row in rows)
        return list(rows)

    def exists(
        self,
        user_id: str,
        entry_type: LedgerEntryType,
        reference_id: Optional[str],
        source_period: Optional[date] = None,
    ) -> bool:
        return any(
            e["user_id"] == user_id
            and e["type"] == entry_type
            and e["reference_id"] == reference_id
            and (source_period is None or e["source_period"] == source_period)
            for e in self.storage.ledger_entries
        )

    def list_for_account(self, user_id: str) -> list[LedgerEntry]:
        return [LedgerEntry(**e) for e in self.storage.ledger_entries if e["user_id"] == user_id]


class InMemoryExtensionRequestStore:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get(self, extension_id: str) -> Optional[ExtensionRequest]:
        row = self.storage.extension_requests.get(extension_id)
        return ExtensionRequest(**row) if row else None

    def update(self, extension_id: str, patch: dict) -> ExtensionRequest:
        row = self.storage.extension_requests.get(extension_id)
        if row is None:
            raise StoreError(f"extension_requests row {extension_id} does not exist")
        row.update({key: _to_row_value(value) for key, value in patch.items()})
        if "updated_at" not in patch:
            row["updated_at"] = datetime.now(timezone.utc)
        return ExtensionRequest(**row)


class AccountLocks:
    """Single-writer lock per account (or request) identifier.

    A lock is kept only while some caller holds or waits on it, so the
    registry does not grow with every account ever settled.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def _held(self, account_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(account_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[account_id]

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, *account_ids: Optional[str]) -> Iterator[None]:
        # Sorted acquisition keeps two settlements over the same pair of accounts from deadlocking.
        with ExitStack() as stack:
            for account_id in sorted({a for a in account_ids if a}):
                stack.enter_context(self._held(account_id))
            yield
