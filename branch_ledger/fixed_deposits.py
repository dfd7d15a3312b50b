"""
Fixed Deposit Lifecycle Module

A Fixed Deposit (FD) locks part of an account balance away for a fixed term
at a fixed annual rate. The principal is debited from the linked account when
the FD is opened, monthly interest is credited back by the scheduler, and the
principal is returned on early closure.

States move one way only: ACTIVE -> MATURED (time driven) or ACTIVE -> CLOSED
(agent driven). An account holds at most one ACTIVE FD.
"""

import calendar
from decimal import Decimal, ROUND_FLOOR
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .ledger import Ledger, Transaction, TransactionType, AccountStatus, AmountLike
from .ids import IdGenerator
from .errors import (
    InvalidAmount, InvalidTerm, IneligibleAccount, InsufficientFunds, FDNotFound,
    retry_on_conflict
)
from .logging_config import get_logger, log_action


ELIGIBLE_TYPE_KEYWORDS = ("ADULT", "TEEN", "SENIOR", "JOINT")


class FDTerm(Enum):
    """Offered terms: (years as quoted, label, months, annual rate %)"""
    SIX_MONTHS = ("0.5", "6_MONTHS", 6, Decimal("13.00"))
    ONE_YEAR = ("1", "1_YEAR", 12, Decimal("14.00"))
    THREE_YEARS = ("3", "3_YEARS", 36, Decimal("15.00"))

    def __init__(self, years: str, label: str, months: int, rate: Decimal):
        self.years = years
        self.label = label
        self.months = months
        self.rate = rate

    @classmethod
    def parse(cls, value: Union['FDTerm', str, int, float, Decimal]) -> 'FDTerm':
        """Accept a term as years ("0.5", 1, 3) or as a label ("1_YEAR")"""
        if isinstance(value, FDTerm):
            return value
        text = str(value).strip().upper()
        for term in cls:
            if text in (term.label, term.name):
                return term
        try:
            years = Decimal(text)
        except ArithmeticError:
            raise InvalidTerm(f"Invalid FD term: {value}", term=str(value))
        for term in cls:
            if years == Decimal(term.years):
                return term
        raise InvalidTerm(f"Invalid FD term: {value}. Valid terms: 0.5, 1, 3 years", term=str(value))


class FDStatus(Enum):
    ACTIVE = "ACTIVE"
    MATURED = "MATURED"
    CLOSED = "CLOSED"


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_interest(principal: Decimal, annual_rate: Decimal) -> Decimal:
    """Exact monthly interest; callers quantize when posting"""
    return principal * annual_rate / Decimal("100") / Decimal("12")


@dataclass
class FixedDeposit(StorageRecord):
    account_id: str
    term: FDTerm
    principal: Money
    interest_rate: Decimal
    start_date: date
    maturity_date: date
    status: FDStatus = FDStatus.ACTIVE
    renewed_from: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == FDStatus.ACTIVE

    @property
    def monthly_interest(self) -> Decimal:
        return monthly_interest(self.principal.amount, self.interest_rate)


@dataclass
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    account_type_name: Optional[str] = None
    active_fd_id: Optional[str] = None


@dataclass
class ClosureResult:
    fixed_deposit: FixedDeposit
    principal_returned: Money
    pending_interest_paid: Money
    total_returned: Money
    transactions: List[Transaction] = field(default_factory=list)


class FixedDepositManager:
    """
    Enforces FD eligibility, uniqueness, creation, renewal and closure
    against the Ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Ledger,
        id_generator: IdGenerator,
        audit_trail: AuditTrail,
        interest_interval_days: int = 30
    ):
        self.storage = storage
        self.ledger = ledger
        self.ids = id_generator
        self.audit_trail = audit_trail
        self.interest_interval_days = interest_interval_days
        self.table_name = id_generator.fixed_deposits_table
        self.logger = get_logger("branch_ledger.fixed_deposits")

    @staticmethod
    def monthly_interest(principal: AmountLike, annual_rate: Decimal) -> Decimal:
        if isinstance(principal, Money):
            principal = principal.amount
        return monthly_interest(Decimal(str(principal)), Decimal(str(annual_rate)))

    # Eligibility

    def check_eligibility(self, account_id: str) -> EligibilityResult:
        """
        Check whether an account may open a new FD.

        Raises:
            AccountNotFound: the account does not exist
        """
        account = self.ledger.require_account(account_id)
        account_type = self.ledger.get_account_type(account.account_type_id)
        type_name = account_type.name if account_type else ""

        if account.status != AccountStatus.ACTIVE:
            return EligibilityResult(False, "Account is not active", type_name)

        # Loose legacy rule: substring match on the product name
        if not any(keyword in type_name.upper() for keyword in ELIGIBLE_TYPE_KEYWORDS):
            return EligibilityResult(
                False,
                f"Account type '{type_name}' is not eligible for Fixed Deposits. "
                "Only Adult, Teen, Senior, and Joint accounts can have FDs.",
                type_name
            )

        active = self.active_fd_for_account(account_id)
        if active:
            return EligibilityResult(
                False, f"Account already has an active Fixed Deposit ({active.id})",
                type_name, active.id
            )

        return EligibilityResult(True, None, type_name)

    def ensure_eligible(self, account_id: str) -> EligibilityResult:
        result = self.check_eligibility(account_id)
        if not result.eligible:
            raise IneligibleAccount(result.reason, account_id=account_id,
                                    active_fd_id=result.active_fd_id)
        return result

    # Lifecycle

    def create(self, account_id: str, principal: AmountLike, term: Union[FDTerm, str, int, float, Decimal],
               employee_id: Optional[str] = None) -> FixedDeposit:
        """
        Open an FD, debiting the principal from the account

        Args:
            account_id: Linked savings account
            principal: Amount to lock away
            term: 0.5, 1 or 3 years
            employee_id: Acting agent

        Returns:
            The new ACTIVE FixedDeposit

        Raises:
            InvalidTerm, InvalidAmount: before anything is touched
            IneligibleAccount: account inactive, wrong type or already has an FD
            InsufficientFunds: principal exceeds the balance, or the debit would
                break the account type's minimum balance
        """
        term = FDTerm.parse(term)
        principal = self.ledger.money(principal)
        if not principal.is_positive():
            raise InvalidAmount("FD principal must be positive", amount=str(principal.amount))

        def operation():
            with self.storage.atomic():
                self.storage.lock_record(self.ledger.accounts_table, account_id)
                # Re-check under the lock so two concurrent creates cannot both pass
                self.ensure_eligible(account_id)
                account = self.ledger.require_account(account_id)
                if principal > account.balance:
                    raise InsufficientFunds(
                        f"Insufficient balance: {account.balance.to_string()} available, "
                        f"{principal.to_string()} requested",
                        account_id=account_id
                    )

                now = self.ledger.clock()
                start = now.date()
                fd = FixedDeposit(
                    id=self.ids.next_fd_id(),
                    created_at=now,
                    updated_at=now,
                    account_id=account_id,
                    term=term,
                    principal=principal,
                    interest_rate=term.rate,
                    start_date=start,
                    maturity_date=add_months(start, term.months),
                    created_by=employee_id
                )
                self.storage.insert(self.table_name, fd.id, self._fd_to_dict(fd))
                self.ledger.debit(account_id, principal, f"Fixed Deposit opened - {fd.id}",
                                  TransactionType.WITHDRAWAL, employee_id, fd_id=fd.id)
                self.audit_trail.log_event(
                    event_type=AuditEventType.FD_CREATED,
                    entity_type="fixed_deposit",
                    entity_id=fd.id,
                    metadata={
                        "account_id": account_id,
                        "principal": principal.amount,
                        "term": term.label,
                        "interest_rate": term.rate,
                        "maturity_date": fd.maturity_date.isoformat()
                    },
                    user_id=employee_id
                )
                return fd

        fd = retry_on_conflict(operation)
        log_action(
            self.logger, "info", f"Fixed Deposit created: {fd.principal.to_string()} for {term.label}",
            user_id=employee_id, action="create_fd", resource=f"fixed_deposit:{fd.id}",
            extra={"account_id": account_id, "maturity_date": fd.maturity_date.isoformat()}
        )
        return fd

    def renew(self, fd_id: str, new_term: Union[FDTerm, str, int, float, Decimal],
              employee_id: Optional[str] = None) -> FixedDeposit:
        """
        Roll an FD's principal into a fresh FD starting today.

        An ACTIVE FD is moved to MATURED; MATURED or CLOSED FDs keep their
        status. No funds move. Refused when another ACTIVE FD already exists
        on the account.
        """
        term = FDTerm.parse(new_term)

        def operation():
            with self.storage.atomic():
                self.storage.lock_record(self.table_name, fd_id)
                old = self.require(fd_id)
                self.storage.lock_record(self.ledger.accounts_table, old.account_id)

                active = self.active_fd_for_account(old.account_id)
                if active and active.id != old.id:
                    raise IneligibleAccount(
                        f"Account already has an active Fixed Deposit ({active.id})",
                        account_id=old.account_id, active_fd_id=active.id
                    )

                now = self.ledger.clock()
                previous_status = old.status
                if old.is_active:
                    self._transition(old, FDStatus.MATURED, now)

                start = now.date()
                fd = FixedDeposit(
                    id=self.ids.next_fd_id(),
                    created_at=now,
                    updated_at=now,
                    account_id=old.account_id,
                    term=term,
                    principal=old.principal,
                    interest_rate=term.rate,
                    start_date=start,
                    maturity_date=add_months(start, term.months),
                    renewed_from=old.id,
                    created_by=employee_id
                )
                self.storage.insert(self.table_name, fd.id, self._fd_to_dict(fd))
                self.audit_trail.log_event(
                    event_type=AuditEventType.FD_RENEWED,
                    entity_type="fixed_deposit",
                    entity_id=fd.id,
                    metadata={
                        "renewed_from": old.id,
                        "previous_status": previous_status.value,
                        "principal": fd.principal.amount,
                        "term": term.label,
                        "interest_rate": term.rate
                    },
                    user_id=employee_id
                )
                return fd

        fd = retry_on_conflict(operation)
        log_action(self.logger, "info", f"Fixed Deposit renewed from {fd.renewed_from}",
                   user_id=employee_id, action="renew_fd", resource=f"fixed_deposit:{fd.id}",
                   extra={"term": term.label})
        return fd

    def close(self, fd_id: str, employee_id: Optional[str] = None) -> ClosureResult:
        """
        Close an ACTIVE FD early, returning principal plus pending interest.

        Pending interest is the monthly interest pro-rated over the days since
        the last interest payment (or the start date), floored to cents.
        """
        with self.storage.atomic():
            # FD row before account row, the same order the scheduler uses
            self.storage.lock_record(self.table_name, fd_id)
            fd = self.get(fd_id)
            if not fd or not fd.is_active:
                raise FDNotFound(f"Active Fixed Deposit {fd_id} not found", fd_id=fd_id)
            self.storage.lock_record(self.ledger.accounts_table, fd.account_id)

            now = self.ledger.clock()
            pending = self.pending_interest(fd, now.date())

            transactions = [
                self.ledger.credit(fd.account_id, fd.principal, f"Fixed Deposit closed - {fd.id}",
                                   TransactionType.DEPOSIT, employee_id, fd_id=fd.id)
            ]
            if pending.is_positive():
                transactions.append(self.ledger.credit(
                    fd.account_id, pending, f"Fixed Deposit pending interest - {fd.id}",
                    TransactionType.FD_INTEREST, employee_id, fd_id=fd.id
                ))

            self._transition(fd, FDStatus.CLOSED, now)
            self.audit_trail.log_event(
                event_type=AuditEventType.FD_CLOSED,
                entity_type="fixed_deposit",
                entity_id=fd.id,
                metadata={
                    "account_id": fd.account_id,
                    "principal_returned": fd.principal.amount,
                    "pending_interest_paid": pending.amount
                },
                user_id=employee_id
            )

        result = ClosureResult(
            fixed_deposit=fd,
            principal_returned=fd.principal,
            pending_interest_paid=pending,
            total_returned=fd.principal + pending,
            transactions=transactions
        )
        log_action(self.logger, "info", f"Fixed Deposit closed, returned {result.total_returned.to_string()}",
                   user_id=employee_id, action="close_fd", resource=f"fixed_deposit:{fd.id}")
        return result

    def mark_matured(self, fd_id: str, today: date) -> bool:
        """Move an ACTIVE FD past its maturity date to MATURED"""
        with self.storage.atomic():
            self.storage.lock_record(self.table_name, fd_id)
            fd = self.get(fd_id)
            if not fd or not fd.is_active or fd.maturity_date > today:
                return False
            self._transition(fd, FDStatus.MATURED, self.ledger.clock())
            self.audit_trail.log_event(
                event_type=AuditEventType.FD_MATURED,
                entity_type="fixed_deposit",
                entity_id=fd.id,
                metadata={"maturity_date": fd.maturity_date.isoformat(), "run_date": today.isoformat()}
            )
        return True

    def _transition(self, fd: FixedDeposit, status: FDStatus, now: datetime) -> None:
        if not fd.is_active:
            raise ValueError(f"Fixed Deposit {fd.id} is {fd.status.value}; status is final")
        fd.status = status
        fd.updated_at = now
        if status == FDStatus.CLOSED:
            fd.closed_at = now
        self.storage.save(self.table_name, fd.id, self._fd_to_dict(fd))

    # Interest

    def last_interest_payment(self, fd: FixedDeposit) -> Optional[Transaction]:
        history = self.ledger.get_account_transactions(
            fd.account_id, [TransactionType.FD_INTEREST], fd_id=fd.id, limit=1
        )
        return history[0] if history else None

    def last_payment_date(self, fd: FixedDeposit) -> date:
        last = self.last_interest_payment(fd)
        return last.timestamp.date() if last else fd.start_date

    def pending_interest(self, fd: FixedDeposit, today: date) -> Money:
        days = max((today - self.last_payment_date(fd)).days, 0)
        accrued = fd.monthly_interest * Decimal(days) / Decimal(self.interest_interval_days)
        quantum = fd.principal.currency.quantum
        return Money(accrued.quantize(quantum, rounding=ROUND_FLOOR), fd.principal.currency)

    def interest_history(self, fd_id: str) -> List[Transaction]:
        """FD_INTEREST entries paid for this FD, most recent first"""
        fd = self.require(fd_id)
        return self.ledger.get_account_transactions(
            fd.account_id, [TransactionType.FD_INTEREST], fd_id=fd.id
        )

    # Queries

    def get(self, fd_id: str) -> Optional[FixedDeposit]:
        data = self.storage.load(self.table_name, fd_id)
        if data:
            return self._fd_from_dict(data)
        return None

    def require(self, fd_id: str) -> FixedDeposit:
        fd = self.get(fd_id)
        if not fd:
            raise FDNotFound(f"Fixed Deposit {fd_id} not found", fd_id=fd_id)
        return fd

    def search(self, status: Optional[FDStatus] = None, term: Optional[Union[FDTerm, str]] = None,
               account_id: Optional[str] = None) -> List[FixedDeposit]:
        filters: Dict[str, Any] = {}
        if status:
            filters['status'] = status.value
        if term:
            filters['term'] = FDTerm.parse(term).label
        if account_id:
            filters['account_id'] = account_id
        records = self.storage.find(self.table_name, filters)
        deposits = [self._fd_from_dict(data) for data in records]
        deposits.reverse()
        return deposits

    def active_fd_for_account(self, account_id: str) -> Optional[FixedDeposit]:
        records = self.storage.find(self.table_name, {
            'account_id': account_id,
            'status': FDStatus.ACTIVE.value
        })
        if records:
            return self._fd_from_dict(records[0])
        return None

    def summary(self, fd_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Dashboard view of one FD"""
        fd = self.require(fd_id)
        today = today or self.ledger.clock().date()
        history = self.interest_history(fd_id)
        paid = sum((t.amount.amount for t in history), Decimal("0"))
        currency = fd.principal.currency
        last = history[0] if history else None

        return {
            "fd_id": fd.id,
            "account_id": fd.account_id,
            "term": fd.term.label,
            "principal": str(fd.principal.amount),
            "interest_rate": str(fd.interest_rate),
            "start_date": fd.start_date.isoformat(),
            "maturity_date": fd.maturity_date.isoformat(),
            "status": fd.status.value,
            "renewed_from": fd.renewed_from,
            "days_to_maturity": max((fd.maturity_date - today).days, 0),
            "monthly_interest": str(Money(fd.monthly_interest, currency).amount),
            "last_interest_paid": last.timestamp.date().isoformat() if last else None,
            "last_interest_amount": str(last.amount.amount) if last else None,
            "total_interests_paid": len(history),
            "total_interest_amount": str(Money(paid, currency).amount),
            "current_value": str((fd.principal + Money(paid, currency)).amount)
        }

    # Serialization

    def _fd_to_dict(self, fd: FixedDeposit) -> Dict:
        return {
            'id': fd.id,
            'created_at': fd.created_at.isoformat(),
            'updated_at': fd.updated_at.isoformat(),
            'account_id': fd.account_id,
            'term': fd.term.label,
            'principal': str(fd.principal.amount),
            'currency': fd.principal.currency.code,
            'interest_rate': str(fd.interest_rate),
            'start_date': fd.start_date.isoformat(),
            'maturity_date': fd.maturity_date.isoformat(),
            'status': fd.status.value,
            'renewed_from': fd.renewed_from,
            'closed_at': fd.closed_at.isoformat() if fd.closed_at else None,
            'created_by': fd.created_by
        }

    def _fd_from_dict(self, data: Dict) -> FixedDeposit:
        return FixedDeposit(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            term=FDTerm.parse(data['term']),
            principal=Money(Decimal(data['principal']), Currency[data['currency']]),
            interest_rate=Decimal(data['interest_rate']),
            start_date=date.fromisoformat(data['start_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            status=FDStatus(data['status']),
            renewed_from=data.get('renewed_from'),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None,
            created_by=data.get('created_by')
        )
