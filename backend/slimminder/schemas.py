from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import AlertType, BudgetPeriod, ConnectionStatus, Provider


def _upper_currency(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    up = value.strip().upper()
    if len(up) != 3 or not up.isalpha():
        raise ValueError("must be 3-letter ISO code")
    return up


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    provider: str


class BankConnectRequest(BaseModel):
    provider: Optional[Provider] = None
    permissions: list[str] = Field(default_factory=lambda: ["accounts", "transactions"], min_length=1)


class BankConnectResponse(BaseModel):
    connectionId: str
    authUrl: str
    provider: Provider
    status: ConnectionStatus


class ConnectionResponse(BaseModel):
    id: str
    provider: Provider
    status: ConnectionStatus
    statusMessage: str
    permissions: list[str]
    expiresAt: Optional[datetime] = None
    createdAt: datetime
    updatedAt: datetime


class BankCallbackResponse(BaseModel):
    connectionId: str
    status: ConnectionStatus
    statusMessage: str


class BankAccountResponse(BaseModel):
    id: str
    connectionId: str
    provider: Provider
    providerAccountId: str
    displayName: str
    currency: str
    iban: Optional[str] = None


class SyncRequest(BaseModel):
    connectionId: str = Field(min_length=1)
    accountId: Optional[str] = None
    fromDate: Optional[date] = None
    toDate: Optional[date] = None

    @model_validator(mode="after")
    def validate_range(self) -> "SyncRequest":
        if self.fromDate and self.toDate and self.fromDate > self.toDate:
            raise ValueError("fromDate must not be after toDate")
        return self


class SyncResponse(BaseModel):
    created: int
    updated: int
    unchanged: int


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=50)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=50)
    archived: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class CategoryResponse(BaseModel):
    id: str
    name: str
    icon: Optional[str] = None
    archived: bool
    createdAt: datetime


class BudgetCreate(BaseModel):
    categoryId: str = Field(min_length=1, max_length=100)
    limit: Decimal = Field(gt=0)
    currency: str = Field(default="EUR")
    startsOn: date
    period: BudgetPeriod = BudgetPeriod.month
    active: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _upper_currency(value)


class BudgetUpdate(BaseModel):
    limit: Optional[Decimal] = Field(default=None, gt=0)
    currency: Optional[str] = None
    startsOn: Optional[date] = None
    period: Optional[BudgetPeriod] = None
    active: Optional[bool] = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: Optional[str]) -> Optional[str]:
        return _upper_currency(value)


class BudgetResponse(BaseModel):
    id: str
    categoryId: str
    limit: Decimal
    currency: str
    startsOn: date
    period: BudgetPeriod
    active: bool


class BudgetProgressResponse(BaseModel):
    budgetId: str
    categoryId: str
    categoryName: Optional[str] = None
    limit: Decimal
    currency: str
    spent: Decimal
    remaining: Decimal
    ratio: float
    percentage: float
    alertType: AlertType


class BudgetAlertResponse(BaseModel):
    budgetId: str
    categoryId: str
    categoryName: Optional[str] = None
    alertType: AlertType
    message: str
    spent: Decimal
    limit: Decimal
    ratio: float


class TransactionCreate(BaseModel):
    amount: Decimal
    currency: str = Field(default="EUR")
    date: date
    categoryId: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=200)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _upper_currency(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("must not be zero")
        return value


class TransactionResponse(BaseModel):
    id: str
    amount: Decimal
    currency: str
    date: date
    categoryId: Optional[str] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    bankAccountId: Optional[str] = None
