from datetime import datetime, timezone
from decimal import Decimal

import pytest

from settlement.models import SubscriptionPrice, TierRate
from settlement.service import SettlementService
from settlement.storage import InMemoryStorage


SETTLEMENT_TIME = datetime(2024, 1, 27, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return SETTLEMENT_TIME


@pytest.fixture
def storage() -> InMemoryStorage:
    storage = InMemoryStorage(seed=False)
    storage.add_price(SubscriptionPrice(id="monthly", price_cents=100000, active=True))
    storage.add_tier(TierRate(
        tier_name="Rookie", min_referrals=0,
        referral_bonus_percentage=Decimal("10"), cashback_percentage=Decimal("2"),
    ))
    storage.add_tier(TierRate(
        tier_name="Pro", min_referrals=10,
        referral_bonus_percentage=Decimal("15"), cashback_percentage=Decimal("5"),
    ))
    storage.add_tier(TierRate(
        tier_name="Legend", min_referrals=25,
        referral_bonus_percentage=Decimal("20"), cashback_percentage=Decimal("10"),
    ))
    return storage


@pytest.fixture
def service(storage, now) -> SettlementService:
    return SettlementService(storage, clock=lambda: now)
