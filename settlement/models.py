from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_serializer


CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a stored amount (string, int, Decimal or None) into a 2dp Decimal."""
    if value is None or value == "":
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class Tier(str, Enum):
    ROOKIE = "Rookie"
    PRO = "Pro"
    LEGEND = "Legend"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)

    def __lt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank


KNOWN_TIERS = [tier.value for tier in Tier]


class AccountStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPEND = "suspend"
    BAN = "ban"


class ExtensionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LedgerEntryType(str, Enum):
    REFERRAL_BONUS = "referral_bonus"
    REFERRAL_BONUS_EXTENSION = "referral_bonus_extension"
    CASHBACK = "cashback"
    CASHBACK_EXTENSION = "cashback_extension"
    WITHDRAWAL = "withdrawal"
    CUSTOM = "custom"

    @property
    def sign(self) -> int:
        return -1 if self is LedgerEntryType.WITHDRAWAL else 1


class LedgerEntryStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class CashbackEligibility(str, Enum):
    ANY_TIER = "any_tier"
    PRO_ONLY = "pro_only"


@dataclass(frozen=True)
class SettlementContext:
    """Parameters that distinguish the payment and extension settlement paths."""
    ledger_suffix: str
    cashback_eligibility: CashbackEligibility
    # Payments reuse the account id as reference, so their rows are also keyed by period.
    dedup_by_period: bool

    def entry_type(self, base: str) -> LedgerEntryType:
        return LedgerEntryType(f"{base}{self.ledger_suffix}")

    def cashback_allowed(self, tier: str) -> bool:
        if self.cashback_eligibility is CashbackEligibility.ANY_TIER:
            return True
        return tier == Tier.PRO.value


PAYMENT_CONTEXT = SettlementContext(
    ledger_suffix="", cashback_eligibility=CashbackEligibility.ANY_TIER, dedup_by_period=True,
)
EXTENSION_CONTEXT = SettlementContext(
    ledger_suffix="_extension", cashback_eligibility=CashbackEligibility.PRO_ONLY, dedup_by_period=False,
)


class Account(BaseModel):
    id: str
    fullname: str = ""
    email: str = ""
    whatsapp: Optional[str] = None
    tier: str = Tier.ROOKIE.value
    status: AccountStatus = AccountStatus.UNPAID
    balance: Decimal = Decimal("0.00")
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    monthly_referral_count: int = Field(default=0, ge=0)
    last_settlement_ref: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("balance")
    def _serialize_balance(self, value: Decimal) -> str:
        return str(to_money(value))


class TierRate(BaseModel):
    tier_name: str
    min_referrals: int = 0
    referral_bonus_percentage: Decimal = Decimal("0")
    cashback_percentage: Decimal = Decimal("0")

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @classmethod
    def zero(cls, tier_name: str) -> "TierRate":
        return cls(tier_name=tier_name)


class SubscriptionPrice(BaseModel):
    id: str
    name: str = "Monthly membership"
    price_cents: int = Field(..., ge=0)
    currency: str = "IDR"
    interval: str = "month"
    active: bool = False

    model_config = ConfigDict(from_attributes=True)


class ExtensionRequest(BaseModel):
    id: str
    user_id: str
    status: ExtensionStatus = ExtensionStatus.PENDING
    payment_method: Optional[str] = None
    proof_url: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    type: LedgerEntryType
    amount: Decimal
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    source_period: date
    applied_percentage: Optional[Decimal] = None
    tier_at_time: Optional[str] = None
    reference_id: Optional[str] = None
    idempotency_key: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.type.sign


class PaymentSettlement(BaseModel):
    account: Account
    new_expiry: datetime
    referral_bonus_amount: Decimal
    cashback_amount: Decimal
    referrer_id: Optional[str] = None
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)


class ExtensionSettlement(BaseModel):
    extension_id: str
    new_expiry: datetime
    referral_bonus: Decimal
    cashback: Decimal
    referrer_id: Optional[str] = None
    ledger_entries: list[LedgerEntry] = Field(default_factory=list)


class AccountBalance(BaseModel):
    account_id: str
    cached_balance: Decimal
    ledger_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    @property
    def in_sync(self) -> bool:
        return self.cached_balance == self.ledger_balance


class ReferralCodeRequest(BaseModel):
    email: str = Field(..., min_length=1)
    whatsapp: str = Field(..., min_length=1)
    was_referred: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "email": "john.doe@example.com",
            "whatsapp": "+62812345678",
            "was_referred": True,
        }
    })


class ReferralCodeResponse(BaseModel):
    referral_code: str
