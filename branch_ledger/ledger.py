"""
Ledger Store Module

Accounts, account types and the append-only transaction log with running
balances. ``credit`` and ``debit`` are the only code paths that change a
balance or write a transaction row; both run inside one storage transaction
with the account row locked, so a crash mid-operation leaves no partial state.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union, Any
from enum import Enum

from .currency import Money, Currency, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ids import IdGenerator, TRANSACTION_ID_PATTERN, generate_reference_number
from .errors import (
    InvalidAmount, AccountNotFound, AccountInactive, InsufficientFunds, SameAccount,
    IdempotencyConflict
)
from .logging_config import get_logger, log_action


Clock = Callable[[], datetime]
AmountLike = Union[Money, Decimal, int, str]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class TransactionType(Enum):
    """Ledger entry types; the second element is the balance direction"""
    INITIAL = ("INITIAL", 1)
    DEPOSIT = ("DEPOSIT", 1)
    WITHDRAWAL = ("WITHDRAWAL", -1)
    TRANSFER_IN = ("TRANSFER_IN", 1)
    TRANSFER_OUT = ("TRANSFER_OUT", -1)
    FD_INTEREST = ("FD_INTEREST", 1)
    SAVINGS_INTEREST = ("SAVINGS_INTEREST", 1)

    def __init__(self, code: str, direction: int):
        self.code = code
        self.direction = direction

    @property
    def is_credit(self) -> bool:
        return self.direction > 0

    @classmethod
    def from_code(cls, code: str) -> 'TransactionType':
        for member in cls:
            if member.code == code:
                return member
        raise ValueError(f"Unknown transaction type: {code}")


CREDIT_TYPES = [t for t in TransactionType if t.is_credit]
DEBIT_TYPES = [t for t in TransactionType if not t.is_credit]


@dataclass
class AccountType(StorageRecord):
    """Savings product: rate, minimum balance and the age band it serves"""
    name: str
    type_code: str
    interest_rate: Decimal  # Annual percent
    minimum_balance: Money
    min_age: int = 0
    max_age: Optional[int] = None


@dataclass
class Account(StorageRecord):
    account_type_id: str
    branch_id: str
    balance: Money
    customer_ids: List[str] = field(default_factory=list)
    status: AccountStatus = AccountStatus.ACTIVE
    opened_by: Optional[str] = None

    @property
    def opened_at(self) -> datetime:
        return self.created_at

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry"""
    account_id: str
    transaction_type: TransactionType
    amount: Money  # Always positive; direction comes from the type
    balance_before: Money
    balance_after: Money
    description: str
    reference_number: str
    employee_id: Optional[str] = None
    fd_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    @property
    def effect(self) -> Money:
        """Signed change this entry made to the balance"""
        return self.amount if self.transaction_type.is_credit else -self.amount


class Ledger:
    """
    Atomic balance mutation with an auditable trail
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        id_generator: IdGenerator,
        currency: Currency = Currency.LKR,
        clock: Clock = system_clock
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ids = id_generator
        self.currency = currency
        self.clock = clock
        self.account_types_table = "account_types"
        self.accounts_table = id_generator.accounts_table
        self.transactions_table = id_generator.transactions_table
        self.logger = get_logger("branch_ledger.ledger")

    def money(self, amount: AmountLike) -> Money:
        """Coerce an amount to Money in the ledger currency"""
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise InvalidAmount(
                    f"Amount currency {amount.currency.code} does not match ledger currency {self.currency.code}"
                )
            return amount
        try:
            return Money(to_decimal(amount), self.currency)
        except ArithmeticError as e:
            raise InvalidAmount(f"Invalid amount: {amount}") from e

    # Postings

    def credit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        transaction_type: TransactionType = TransactionType.DEPOSIT,
        employee_id: Optional[str] = None,
        fd_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Increase an account balance and append one ledger entry.

        Raises:
            InvalidAmount: amount is not positive
            AccountNotFound: no such account
            AccountInactive: account is not ACTIVE (interest credits included)
            IdempotencyConflict: the key was already used for a different posting
        """
        if not transaction_type.is_credit:
            raise ValueError(f"{transaction_type.code} is not a credit type")
        return self._post(account_id, amount, description, transaction_type,
                          employee_id, fd_id, idempotency_key)

    def debit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        transaction_type: TransactionType = TransactionType.WITHDRAWAL,
        employee_id: Optional[str] = None,
        fd_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Transaction:
        """
        Decrease an account balance and append one ledger entry.

        Raises:
            InvalidAmount: amount is not positive
            AccountNotFound: no such account
            AccountInactive: account is not ACTIVE
            InsufficientFunds: balance - amount would fall below the account
                type's minimum balance
        """
        if transaction_type.is_credit:
            raise ValueError(f"{transaction_type.code} is not a debit type")
        return self._post(account_id, amount, description, transaction_type,
                          employee_id, fd_id, idempotency_key)

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: str,
        employee_id: Optional[str] = None
    ) -> Tuple[Transaction, Transaction]:
        """
        Move funds between two accounts as one atomic unit.

        Returns:
            (TRANSFER_OUT entry, TRANSFER_IN entry)
        """
        if from_account_id == to_account_id:
            raise SameAccount("Cannot transfer to the same account", account_id=from_account_id)
        amount = self.money(amount)
        if not amount.is_positive():
            raise InvalidAmount("Transfer amount must be positive", amount=str(amount.amount))

        with self.storage.atomic():
            # Sorted lock order keeps opposite-direction transfers from deadlocking
            for account_id in sorted([from_account_id, to_account_id]):
                self.storage.lock_record(self.accounts_table, account_id)

            outgoing = self.debit(from_account_id, amount, description,
                                  TransactionType.TRANSFER_OUT, employee_id)
            incoming = self.credit(to_account_id, amount, description,
                                   TransactionType.TRANSFER_IN, employee_id)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPLETED,
                entity_type="account",
                entity_id=from_account_id,
                metadata={
                    "to_account": to_account_id,
                    "amount": amount.amount,
                    "out_transaction": outgoing.id,
                    "in_transaction": incoming.id
                },
                user_id=employee_id
            )

        log_action(
            self.logger, "info", f"Transfer of {amount.to_string()} completed",
            user_id=employee_id, action="transfer", resource=f"account:{from_account_id}",
            extra={"to_account": to_account_id, "out": outgoing.id, "in": incoming.id}
        )
        return outgoing, incoming

    def _post(
        self,
        account_id: str,
        amount: AmountLike,
        description: str,
        transaction_type: TransactionType,
        employee_id: Optional[str],
        fd_id: Optional[str],
        idempotency_key: Optional[str]
    ) -> Transaction:
        amount = self.money(amount)
        if not amount.is_positive():
            raise InvalidAmount("Amount must be positive", amount=str(amount.amount))

        with self.storage.atomic():
            self.storage.lock_record(self.accounts_table, account_id)
            if idempotency_key:
                existing = self.find_by_idempotency_key(idempotency_key)
                if existing:
                    if (existing.account_id, existing.transaction_type, existing.amount) != \
                            (account_id, transaction_type, amount):
                        raise IdempotencyConflict(
                            f"Idempotency key {idempotency_key} was used for {existing.id} "
                            f"({existing.transaction_type.code} {existing.amount.to_string()} "
                            f"on {existing.account_id})",
                            idempotency_key=idempotency_key, transaction_id=existing.id
                        )
                    return existing

            account = self.require_account(account_id)
            if not account.is_active:
                raise AccountInactive(f"Account {account_id} is {account.status.value}",
                                      account_id=account_id)

            balance_before = account.balance
            balance_after = balance_before + amount if transaction_type.is_credit else balance_before - amount

            if not transaction_type.is_credit:
                minimum = self.minimum_balance(account)
                if balance_after < minimum:
                    raise InsufficientFunds(
                        f"Insufficient funds in {account_id}: balance {balance_before.to_string()}, "
                        f"requested {amount.to_string()}, minimum {minimum.to_string()}",
                        account_id=account_id
                    )

            now = self.clock()
            txn = Transaction(
                id=self.ids.next_transaction_id(),
                created_at=now,
                updated_at=now,
                account_id=account_id,
                transaction_type=transaction_type,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                description=description,
                reference_number=generate_reference_number(),
                employee_id=employee_id,
                fd_id=fd_id,
                idempotency_key=idempotency_key
            )

            account.balance = balance_after
            account.updated_at = now
            self.save_account(account)
            self.storage.insert(self.transactions_table, txn.id, self._transaction_to_dict(txn))

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=txn.id,
                metadata={
                    "account_id": account_id,
                    "transaction_type": transaction_type.code,
                    "amount": amount.amount,
                    "balance_after": balance_after.amount,
                    "fd_id": fd_id
                },
                user_id=employee_id
            )

        log_action(
            self.logger, "info", f"Posted {transaction_type.code} {amount.to_string()}",
            user_id=employee_id, action="post_transaction", resource=f"account:{account_id}",
            extra={"transaction_id": txn.id, "balance_after": str(balance_after.amount)}
        )
        return txn

    # Accounts and account types

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found", account_id=account_id)
        return account

    def list_accounts(self, status: Optional[AccountStatus] = None) -> List[Account]:
        if status:
            records = self.storage.find(self.accounts_table, {"status": status.value})
        else:
            records = self.storage.load_all(self.accounts_table)
        return [self._account_from_dict(data) for data in records]

    def save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def insert_account(self, account: Account) -> None:
        self.storage.insert(self.accounts_table, account.id, self._account_to_dict(account))

    def get_account_type(self, account_type_id: str) -> Optional[AccountType]:
        data = self.storage.load(self.account_types_table, account_type_id)
        if data:
            return self._account_type_from_dict(data)
        return None

    def list_account_types(self) -> List[AccountType]:
        return [self._account_type_from_dict(data)
                for data in self.storage.load_all(self.account_types_table)]

    def insert_account_type(self, account_type: AccountType) -> None:
        self.storage.insert(self.account_types_table, account_type.id,
                            self._account_type_to_dict(account_type))

    def minimum_balance(self, account: Account) -> Money:
        account_type = self.get_account_type(account.account_type_id)
        if account_type:
            return account_type.minimum_balance
        return Money.zero(self.currency)

    # Queries

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def get_account_transactions(
        self,
        account_id: str,
        transaction_types: Optional[List[TransactionType]] = None,
        fd_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[Transaction]:
        """
        Get ledger entries for an account, most recent first

        Args:
            account_id: Account ID
            transaction_types: Optional transaction type filter
            fd_id: Only entries attributed to this Fixed Deposit
            limit: Optional page size
            offset: Entries to skip
        """
        records = self.storage.find(self.transactions_table, {"account_id": account_id})
        transactions = [self._transaction_from_dict(data) for data in records]

        if transaction_types:
            transactions = [t for t in transactions if t.transaction_type in transaction_types]
        if fd_id:
            transactions = [t for t in transactions if self.attributed_to(t, fd_id)]

        # Storage order is posting order
        transactions.reverse()
        transactions = transactions[offset:]
        if limit:
            transactions = transactions[:limit]
        return transactions

    @staticmethod
    def attributed_to(transaction: Transaction, fd_id: str) -> bool:
        """Entries carry fd_id; older rows only name the FD in the description"""
        if transaction.fd_id:
            return transaction.fd_id == fd_id
        return fd_id in (transaction.description or "")

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        records = self.storage.find(self.transactions_table, {"idempotency_key": idempotency_key})
        if records:
            return self._transaction_from_dict(records[0])
        return None

    def verify_running_balance(self, account_id: str) -> Dict[str, Any]:
        """
        Replay an account's entries in timestamp order and check that every
        balance_before/balance_after pair follows from the previous one and
        that the final balance matches the account row.
        """
        account = self.require_account(account_id)
        transactions = sorted(self.get_account_transactions(account_id), key=self._replay_order)

        mismatches = []
        expected = transactions[0].balance_before if transactions else Money.zero(self.currency)
        for txn in transactions:
            if txn.balance_before != expected:
                mismatches.append({
                    "transaction_id": txn.id,
                    "field": "balance_before",
                    "expected": str(expected.amount),
                    "actual": str(txn.balance_before.amount)
                })
            after = txn.balance_before + txn.effect
            if txn.balance_after != after:
                mismatches.append({
                    "transaction_id": txn.id,
                    "field": "balance_after",
                    "expected": str(after.amount),
                    "actual": str(txn.balance_after.amount)
                })
            expected = txn.balance_after

        if transactions and account.balance != expected:
            mismatches.append({
                "transaction_id": None,
                "field": "account_balance",
                "expected": str(expected.amount),
                "actual": str(account.balance.amount)
            })

        return {
            "account_id": account_id,
            "valid": not mismatches,
            "transaction_count": len(transactions),
            "replayed_balance": str(expected.amount),
            "account_balance": str(account.balance.amount),
            "mismatches": mismatches
        }

    @staticmethod
    def _replay_order(transaction: Transaction) -> Tuple[datetime, int]:
        # Ties on timestamp fall back to the numeric id sequence
        match = TRANSACTION_ID_PATTERN.match(transaction.id)
        return transaction.timestamp, int(match.group(1)) if match else 0

    def total_balance(self) -> Money:
        total = Money.zero(self.currency)
        for account in self.list_accounts():
            total = total + account.balance
        return total

    # Serialization

    def _account_type_to_dict(self, account_type: AccountType) -> Dict:
        return {
            'id': account_type.id,
            'created_at': account_type.created_at.isoformat(),
            'updated_at': account_type.updated_at.isoformat(),
            'name': account_type.name,
            'type_code': account_type.type_code,
            'interest_rate': str(account_type.interest_rate),
            'minimum_balance': str(account_type.minimum_balance.amount),
            'currency': account_type.minimum_balance.currency.code,
            'min_age': account_type.min_age,
            'max_age': account_type.max_age
        }

    def _account_type_from_dict(self, data: Dict) -> AccountType:
        return AccountType(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            type_code=data['type_code'],
            interest_rate=Decimal(data['interest_rate']),
            minimum_balance=Money(Decimal(data['minimum_balance']), Currency[data['currency']]),
            min_age=data.get('min_age', 0),
            max_age=data.get('max_age')
        )

    def _account_to_dict(self, account: Account) -> Dict:
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'account_type_id': account.account_type_id,
            'branch_id': account.branch_id,
            'customer_ids': list(account.customer_ids),
            'balance': str(account.balance.amount),
            'currency': account.balance.currency.code,
            'status': account.status.value,
            'opened_by': account.opened_by
        }

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_type_id=data['account_type_id'],
            branch_id=data['branch_id'],
            customer_ids=data.get('customer_ids', []),
            balance=Money(Decimal(data['balance']), Currency[data['currency']]),
            status=AccountStatus(data['status']),
            opened_by=data.get('opened_by')
        )

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        return {
            'id': transaction.id,
            'created_at': transaction.created_at.isoformat(),
            'updated_at': transaction.updated_at.isoformat(),
            'account_id': transaction.account_id,
            'transaction_type': transaction.transaction_type.code,
            'amount': str(transaction.amount.amount),
            'currency': transaction.amount.currency.code,
            'balance_before': str(transaction.balance_before.amount),
            'balance_after': str(transaction.balance_after.amount),
            'description': transaction.description,
            'reference_number': transaction.reference_number,
            'employee_id': transaction.employee_id,
            'fd_id': transaction.fd_id,
            'idempotency_key': transaction.idempotency_key
        }

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        currency = Currency[data['currency']]
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType.from_code(data['transaction_type']),
            amount=Money(Decimal(data['amount']), currency),
            balance_before=Money(Decimal(data['balance_before']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            description=data.get('description', ""),
            reference_number=data.get('reference_number', ""),
            employee_id=data.get('employee_id'),
            fd_id=data.get('fd_id'),
            idempotency_key=data.get('idempotency_key')
        )
