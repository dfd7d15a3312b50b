"""
Account Management Module

Branches, customers, savings account types and account opening. Balances are
never written here directly: opening deposits go through the Ledger as an
INITIAL credit, and later changes only through Ledger postings.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .currency import Money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import Ledger, Account, AccountType, AccountStatus, TransactionType, AmountLike
from .ids import IdGenerator, agent_suffix
from .errors import InvalidAmount, retry_on_conflict
from .logging_config import get_logger, log_action


# name, type code, annual rate %, minimum balance, min age, max age
DEFAULT_ACCOUNT_TYPES = [
    ("Children", "CH", "12.00", "0.00", 0, 12),
    ("Teen", "TN", "11.00", "500.00", 13, 17),
    ("Adult", "AD", "10.00", "1000.00", 18, 59),
    ("Senior", "SN", "13.00", "1000.00", 60, None),
    ("Joint", "JT", "7.00", "5000.00", 18, None),
]

JOINT_TYPE_NAME = "joint"


@dataclass
class Branch(StorageRecord):
    branch_name: str
    address: Optional[str] = None
    district: Optional[str] = None
    status: str = "ACTIVE"


@dataclass
class Customer(StorageRecord):
    first_name: str
    last_name: str
    nic_number: str
    date_of_birth: date
    agent_id: Optional[str] = None
    status: str = "ACTIVE"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


def age_from_birth_date(birth_date: date, today: date) -> int:
    """Completed years between birth_date and today"""
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years


class AccountManager:
    """
    Manages branches, customers, account types and the account lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        id_generator: IdGenerator,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.ledger = ledger
        self.ids = id_generator
        self.audit_trail = audit_trail
        self.branches_table = id_generator.branches_table
        self.customers_table = id_generator.customers_table
        self.logger = get_logger("branch_ledger.accounts")

    def _today(self) -> date:
        return self.ledger.clock().date()

    # Branches

    def register_branch(self, branch_name: str, address: Optional[str] = None,
                        district: Optional[str] = None) -> Branch:
        def operation():
            with self.storage.atomic():
                now = self.ledger.clock()
                branch = Branch(
                    id=self.ids.next_branch_id(),
                    created_at=now,
                    updated_at=now,
                    branch_name=branch_name,
                    address=address,
                    district=district
                )
                self.storage.insert(self.branches_table, branch.id, self._branch_to_dict(branch))
                return branch

        branch = retry_on_conflict(operation)
        log_action(self.logger, "info", f"Branch registered: {branch.branch_name}",
                   action="register_branch", resource=f"branch:{branch.id}")
        return branch

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        data = self.storage.load(self.branches_table, branch_id)
        if data:
            return self._branch_from_dict(data)
        return None

    # Customers

    def register_customer(
        self,
        first_name: str,
        last_name: str,
        nic_number: str,
        date_of_birth: date,
        employee_id: Optional[str] = None
    ) -> Customer:
        """
        Register a customer, or return the existing one with the same NIC.
        """
        def operation():
            with self.storage.atomic():
                existing = self.find_customer_by_nic(nic_number)
                if existing:
                    return existing
                now = self.ledger.clock()
                customer = Customer(
                    id=self.ids.next_customer_id(),
                    created_at=now,
                    updated_at=now,
                    first_name=first_name,
                    last_name=last_name,
                    nic_number=nic_number,
                    date_of_birth=date_of_birth,
                    agent_id=employee_id
                )
                self.storage.insert(self.customers_table, customer.id, self._customer_to_dict(customer))
                return customer

        return retry_on_conflict(operation)

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        data = self.storage.load(self.customers_table, customer_id)
        if data:
            return self._customer_from_dict(data)
        return None

    def find_customer_by_nic(self, nic_number: str) -> Optional[Customer]:
        records = self.storage.find(self.customers_table, {"nic_number": nic_number})
        if records:
            return self._customer_from_dict(records[0])
        return None

    # Account types

    def ensure_default_account_types(self) -> List[AccountType]:
        """Seed the standard savings products if they are missing"""
        with self.storage.atomic():
            for name, code, rate, minimum, min_age, max_age in DEFAULT_ACCOUNT_TYPES:
                if not self.ledger.get_account_type(code):
                    self.create_account_type(name, code, Decimal(rate), minimum, min_age, max_age)
        return self.list_account_types()

    def create_account_type(
        self,
        name: str,
        type_code: str,
        interest_rate: Decimal,
        minimum_balance: AmountLike,
        min_age: int = 0,
        max_age: Optional[int] = None
    ) -> AccountType:
        if interest_rate < 0:
            raise ValueError("Interest rate cannot be negative")
        minimum = self.ledger.money(minimum_balance)
        if minimum.is_negative():
            raise InvalidAmount("Minimum balance cannot be negative")

        now = self.ledger.clock()
        account_type = AccountType(
            id=type_code.upper(),
            created_at=now,
            updated_at=now,
            name=name,
            type_code=type_code.upper(),
            interest_rate=Decimal(interest_rate),
            minimum_balance=minimum,
            min_age=min_age,
            max_age=max_age
        )
        with self.storage.atomic():
            self.ledger.insert_account_type(account_type)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_TYPE_CREATED,
                entity_type="account_type",
                entity_id=account_type.id,
                metadata={
                    "name": name,
                    "interest_rate": account_type.interest_rate,
                    "minimum_balance": minimum.amount
                }
            )
        return account_type

    def get_account_type(self, account_type_id: str) -> Optional[AccountType]:
        return self.ledger.get_account_type(account_type_id)

    def get_account_type_by_name(self, name: str) -> Optional[AccountType]:
        for account_type in self.list_account_types():
            if account_type.name.lower() == name.lower():
                return account_type
        return None

    def list_account_types(self) -> List[AccountType]:
        return self.ledger.list_account_types()

    def eligible_account_type(self, age: int) -> Optional[AccountType]:
        """Single-holder account type whose age band contains ``age``"""
        for account_type in self.list_account_types():
            if account_type.name.lower() == JOINT_TYPE_NAME:
                continue
            if age < account_type.min_age:
                continue
            if account_type.max_age is not None and age > account_type.max_age:
                continue
            return account_type
        return None

    def eligible_account_type_for_customer(self, customer_id: str) -> Optional[AccountType]:
        customer = self.get_customer(customer_id)
        if not customer:
            raise ValueError(f"Customer {customer_id} not found")
        return self.eligible_account_type(age_from_birth_date(customer.date_of_birth, self._today()))

    # Accounts

    def open_account(
        self,
        account_type_id: str,
        branch_id: str,
        employee_id: Optional[str],
        initial_deposit: AmountLike,
        customer_ids: Sequence[str]
    ) -> Account:
        """
        Open an account and post its opening deposit

        Args:
            account_type_id: Savings product to open
            branch_id: Branch the account belongs to
            employee_id: Agent opening the account; its last three characters
                become part of the account id
            initial_deposit: Must cover the product's minimum balance
            customer_ids: Holders; joint accounts need at least two

        Returns:
            The new Account with its balance after the INITIAL credit
        """
        account_type = self.get_account_type(account_type_id)
        if not account_type:
            raise ValueError(f"Account type {account_type_id} not found")
        if not customer_ids:
            raise ValueError("At least one customer is required")
        if account_type.name.lower() == JOINT_TYPE_NAME and len(set(customer_ids)) < 2:
            raise ValueError("Joint accounts need at least two customers")

        deposit = self.ledger.money(initial_deposit)
        if deposit.is_negative():
            raise InvalidAmount("Initial deposit cannot be negative")
        if deposit < account_type.minimum_balance:
            raise InvalidAmount(
                f"Initial deposit must be at least {account_type.minimum_balance.to_string()}",
                minimum_balance=str(account_type.minimum_balance.amount)
            )

        branch_code = str(branch_id).zfill(3)
        if not self.get_branch(branch_code):
            raise ValueError(f"Branch {branch_id} not found")
        for customer_id in customer_ids:
            customer = self.get_customer(customer_id)
            if not customer:
                raise ValueError(f"Customer {customer_id} not found")
            if customer.status != "ACTIVE":
                raise ValueError(f"Customer {customer_id} is not active")

        def operation():
            with self.storage.atomic():
                now = self.ledger.clock()
                account = Account(
                    id=self.ids.next_account_id(account_type.type_code, branch_code,
                                                agent_suffix(employee_id)),
                    created_at=now,
                    updated_at=now,
                    account_type_id=account_type.id,
                    branch_id=branch_code,
                    balance=Money.zero(self.ledger.currency),
                    customer_ids=list(customer_ids),
                    opened_by=employee_id
                )
                self.ledger.insert_account(account)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_OPENED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "account_type": account_type.name,
                        "branch_id": branch_code,
                        "customer_ids": list(customer_ids),
                        "initial_deposit": deposit.amount
                    },
                    user_id=employee_id
                )
                if deposit.is_positive():
                    self.ledger.credit(account.id, deposit, "Initial deposit",
                                       TransactionType.INITIAL, employee_id)
                return account.id

        account_id = retry_on_conflict(operation)
        log_action(
            self.logger, "info", f"Account opened: {account_type.name}",
            user_id=employee_id, action="open_account", resource=f"account:{account_id}",
            extra={"initial_deposit": str(deposit.amount)}
        )
        return self.require_account(account_id)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.ledger.get_account(account_id)

    def require_account(self, account_id: str) -> Account:
        return self.ledger.require_account(account_id)

    def list_accounts(self, status: Optional[AccountStatus] = None) -> List[Account]:
        return self.ledger.list_accounts(status)

    def set_status(self, account_id: str, status: AccountStatus, reason: str,
                   employee_id: Optional[str] = None) -> Account:
        """Activate or deactivate an account"""
        with self.storage.atomic():
            self.storage.lock_record(self.ledger.accounts_table, account_id)
            account = self.require_account(account_id)
            old_status = account.status
            if old_status == status:
                return account
            account.status = status
            account.updated_at = self.ledger.clock()
            self.ledger.save_account(account)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_STATUS_CHANGED,
                entity_type="account",
                entity_id=account_id,
                metadata={
                    "old_status": old_status.value,
                    "new_status": status.value,
                    "reason": reason
                },
                user_id=employee_id
            )

        log_action(self.logger, "info", f"Account status changed to {status.value}",
                   user_id=employee_id, action="set_status", resource=f"account:{account_id}",
                   extra={"reason": reason})
        return account

    # Serialization

    def _branch_to_dict(self, branch: Branch) -> Dict:
        return {
            'id': branch.id,
            'created_at': branch.created_at.isoformat(),
            'updated_at': branch.updated_at.isoformat(),
            'branch_name': branch.branch_name,
            'address': branch.address,
            'district': branch.district,
            'status': branch.status
        }

    def _branch_from_dict(self, data: Dict) -> Branch:
        return Branch(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            branch_name=data['branch_name'],
            address=data.get('address'),
            district=data.get('district'),
            status=data.get('status', "ACTIVE")
        )

    def _customer_to_dict(self, customer: Customer) -> Dict:
        return {
            'id': customer.id,
            'created_at': customer.created_at.isoformat(),
            'updated_at': customer.updated_at.isoformat(),
            'first_name': customer.first_name,
            'last_name': customer.last_name,
            'nic_number': customer.nic_number,
            'date_of_birth': customer.date_of_birth.isoformat(),
            'agent_id': customer.agent_id,
            'status': customer.status
        }

    def _customer_from_dict(self, data: Dict) -> Customer:
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            nic_number=data['nic_number'],
            date_of_birth=date.fromisoformat(data['date_of_birth']),
            agent_id=data.get('agent_id'),
            status=data.get('status', "ACTIVE")
        )
