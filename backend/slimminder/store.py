from datetime import datetime, timezone
from uuid import uuid4

from .models import Budget, Category, Connection, StoredBankAccount, Transaction


class InMemoryStore:
    def __init__(self) -> None:
        self.connections: dict[str, Connection] = {}
        self.categories: dict[str, Category] = {}
        self.budgets: dict[str, Budget] = {}
        self.transactions: dict[str, Transaction] = {}
        self.bank_accounts: dict[str, StoredBankAccount] = {}

    @staticmethod
    def make_id() -> str:
        return str(uuid4())

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)
