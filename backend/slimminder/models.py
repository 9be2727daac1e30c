from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Provider(str, Enum):
    tink = "tink"
    budget_insight = "budget-insight"
    nordigen = "nordigen"
    mock = "mock"


class ConnectionStatus(str, Enum):
    pending = "pending"
    linked = "linked"
    failed = "failed"
    expired = "expired"


class BudgetPeriod(str, Enum):
    month = "month"


class AlertType(str, Enum):
    none = "none"
    warning = "warning"
    over = "over"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    investment = "investment"


@dataclass
class Connection:
    id: str
    user_id: str
    provider: Provider
    status: ConnectionStatus
    created_at: datetime
    updated_at: datetime
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    permissions: list[str] = field(default_factory=list)


@dataclass
class Category:
    id: str
    user_id: str
    name: str
    created_at: datetime
    icon: Optional[str] = None
    archived: bool = False


@dataclass
class Budget:
    id: str
    user_id: str
    category_id: str
    limit: Decimal
    currency: str
    starts_on: date
    period: BudgetPeriod = BudgetPeriod.month
    active: bool = True


@dataclass
class Transaction:
    id: str
    user_id: str
    amount: Decimal
    currency: str
    date: date
    category_id: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    bank_account_id: Optional[str] = None
    external_id: Optional[str] = None
    sync_hash: Optional[str] = None


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: str
    category_id: str
    limit: Decimal
    currency: str
    spent: Decimal
    remaining: Decimal
    ratio: Decimal
    alert_type: AlertType
    category_name: Optional[str] = None


@dataclass(frozen=True)
class BudgetAlert:
    progress: BudgetProgress
    message: str

    @property
    def alert_type(self) -> AlertType:
        return self.progress.alert_type


# Normalized shapes returned by provider adapters.


@dataclass(frozen=True)
class AuthorizationRequest:
    auth_url: str
    state: str


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in_seconds: int


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expires_in_seconds: int
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class BankAccount:
    id: str
    name: str
    type: AccountType
    currency: str
    status: str = "active"
    balance: Optional[Decimal] = None
    iban: Optional[str] = None
    account_number: Optional[str] = None


@dataclass(frozen=True)
class ProviderTransaction:
    id: str
    account_id: str
    amount: Decimal
    currency: str
    date: date
    description: str
    merchant: Optional[str] = None
    category: Optional[str] = None


@dataclass
class StoredBankAccount:
    id: str
    user_id: str
    connection_id: str
    provider: Provider
    provider_account_id: str
    display_name: str
    currency: str
    iban: Optional[str]
    created_at: datetime
    updated_at: datetime
