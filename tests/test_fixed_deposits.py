"""
Test suite for the Fixed Deposit lifecycle

Eligibility, one-active-FD-per-account, creation debits, early closure with
pending interest and renewal.
"""

import threading
import pytest
from datetime import date
from decimal import Decimal

from branch_ledger.currency import Money
from branch_ledger.ledger import AccountStatus, TransactionType
from branch_ledger.fixed_deposits import FDTerm, FDStatus, add_months, monthly_interest
from branch_ledger.audit import AuditEventType
from branch_ledger.errors import (
    InvalidAmount, InvalidTerm, IneligibleAccount, InsufficientFunds, FDNotFound,
    AccountNotFound, AccountInactive
)

from ledger_fixtures import EMPLOYEE_ID, FakeClock, make_system, open_account


class TestFDTerms:

    @pytest.mark.parametrize("value,expected", [
        ("0.5", FDTerm.SIX_MONTHS),
        (0.5, FDTerm.SIX_MONTHS),
        ("1", FDTerm.ONE_YEAR),
        (1, FDTerm.ONE_YEAR),
        ("3_YEARS", FDTerm.THREE_YEARS),
        ("one_year", FDTerm.ONE_YEAR),
    ])
    def test_parse(self, value, expected):
        assert FDTerm.parse(value) == expected

    @pytest.mark.parametrize("value", ["2", "5", "forever", ""])
    def test_invalid_terms(self, value):
        with pytest.raises(InvalidTerm):
            FDTerm.parse(value)

    def test_rates(self):
        assert FDTerm.SIX_MONTHS.rate == Decimal("13.00")
        assert FDTerm.ONE_YEAR.rate == Decimal("14.00")
        assert FDTerm.THREE_YEARS.rate == Decimal("15.00")

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2027, 8, 31), 6) == date(2028, 2, 29)
        assert add_months(date(2026, 1, 5), 36) == date(2029, 1, 5)
        assert add_months(date(2026, 11, 15), 2) == date(2027, 1, 15)

    def test_monthly_interest(self):
        assert monthly_interest(Decimal("50000"), Decimal("14")).quantize(Decimal("0.01")) == Decimal("583.33")


class TestFDCreation:

    def setup_method(self):
        self.clock = FakeClock()
        self.system = make_system(self.clock)
        self.fds = self.system.fixed_deposits
        self.account = open_account(self.system, "100000.00")

    def test_create(self):
        fd = self.fds.create(self.account.id, Decimal("50000"), "1", EMPLOYEE_ID)

        assert fd.id == "FD-00001"
        assert fd.status == FDStatus.ACTIVE
        assert fd.term == FDTerm.ONE_YEAR
        assert fd.interest_rate == Decimal("14.00")
        assert fd.start_date == date(2026, 1, 5)
        assert fd.maturity_date == date(2027, 1, 5)
        assert fd.principal == Money(Decimal("50000.00"))

        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("50000.00"))
        withdrawals = self.system.ledger.get_account_transactions(
            self.account.id, transaction_types=[TransactionType.WITHDRAWAL]
        )
        assert len(withdrawals) == 1
        assert withdrawals[0].description == "Fixed Deposit opened - FD-00001"
        assert withdrawals[0].fd_id == fd.id

        events = self.system.audit_trail.get_events_for_entity("fixed_deposit", fd.id)
        assert [e.event_type for e in events] == [AuditEventType.FD_CREATED]

    def test_principal_above_balance(self):
        small = open_account(self.system, "1000.00", nic_number="198811112222")

        with pytest.raises(InsufficientFunds):
            self.fds.create(small.id, Decimal("5000"), "0.5")

        assert self.system.ledger.require_account(small.id).balance == Money(Decimal("1000.00"))
        assert self.fds.search(account_id=small.id) == []

    def test_principal_breaking_minimum_balance(self):
        with pytest.raises(InsufficientFunds):
            self.fds.create(self.account.id, Decimal("99500"), "1")
        assert self.fds.active_fd_for_account(self.account.id) is None

    def test_one_active_fd_per_account(self):
        first = self.fds.create(self.account.id, Decimal("20000"), "1")

        with pytest.raises(IneligibleAccount) as exc_info:
            self.fds.create(self.account.id, Decimal("10000"), "3")
        assert exc_info.value.details["active_fd_id"] == first.id
        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("80000.00"))

    def test_invalid_inputs_touch_nothing(self):
        with pytest.raises(InvalidTerm):
            self.fds.create(self.account.id, Decimal("1000"), "2")
        with pytest.raises(InvalidAmount):
            self.fds.create(self.account.id, Decimal("0"), "1")
        with pytest.raises(InvalidAmount):
            self.fds.create(self.account.id, Decimal("-100"), "1")
        with pytest.raises(AccountNotFound):
            self.fds.create("AD-001-042-99999", Decimal("1000"), "1")

        assert self.fds.search() == []
        assert len(self.system.ledger.get_account_transactions(self.account.id)) == 1

    def test_concurrent_creates_allow_one(self):
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                fd = self.fds.create(self.account.id, Decimal("30000"), "1")
                outcome = fd.id
            except IneligibleAccount:
                outcome = "ineligible"
            with lock:
                outcomes.append(outcome)

        workers = [threading.Thread(target=attempt) for _ in range(4)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        assert sorted(outcomes) == ["FD-00001", "ineligible", "ineligible", "ineligible"]
        assert len(self.fds.search(status=FDStatus.ACTIVE, account_id=self.account.id)) == 1
        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("70000.00"))


class TestEligibility:

    def setup_method(self):
        self.system = make_system()
        self.fds = self.system.fixed_deposits

    def test_children_account_is_ineligible(self):
        child = open_account(self.system, "5000", account_type_id="CH",
                             nic_number="201812345678", birth_date=date(2018, 4, 1))

        result = self.fds.check_eligibility(child.id)
        assert not result.eligible
        assert result.account_type_name == "Children"
        with pytest.raises(IneligibleAccount):
            self.fds.create(child.id, Decimal("1000"), "1")

    def test_teen_account_is_eligible(self):
        teen = open_account(self.system, "5000", account_type_id="TN",
                            nic_number="201012345678", birth_date=date(2010, 4, 1))

        assert self.fds.check_eligibility(teen.id).eligible
        assert self.fds.create(teen.id, Decimal("1000"), "0.5").term == FDTerm.SIX_MONTHS

    def test_inactive_account_is_ineligible(self):
        account = open_account(self.system, "5000")
        self.system.accounts.set_status(account.id, AccountStatus.INACTIVE, "Dormant")

        result = self.fds.check_eligibility(account.id)
        assert not result.eligible
        assert "not active" in result.reason

    def test_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.fds.check_eligibility("AD-001-042-99999")


class TestFDClosure:

    def setup_method(self):
        self.clock = FakeClock()
        self.system = make_system(self.clock)
        self.fds = self.system.fixed_deposits
        self.account = open_account(self.system, "100000.00")
        self.fd = self.fds.create(self.account.id, Decimal("50000"), "1", EMPLOYEE_ID)

    def test_close_pays_pro_rated_pending_interest(self):
        self.clock.advance(days=15)

        result = self.fds.close(self.fd.id, EMPLOYEE_ID)

        assert result.principal_returned == Money(Decimal("50000.00"))
        assert result.pending_interest_paid == Money(Decimal("291.66"))
        assert result.total_returned == Money(Decimal("50291.66"))
        assert [t.transaction_type for t in result.transactions] == [
            TransactionType.DEPOSIT, TransactionType.FD_INTEREST
        ]
        assert result.transactions[0].description == f"Fixed Deposit closed - {self.fd.id}"

        closed = self.fds.get(self.fd.id)
        assert closed.status == FDStatus.CLOSED
        assert closed.closed_at == self.clock.now
        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("100291.66"))

    def test_close_on_opening_day_returns_principal_only(self):
        result = self.fds.close(self.fd.id)

        assert result.pending_interest_paid == Money.zero()
        assert len(result.transactions) == 1

    def test_second_close_is_rejected(self):
        self.fds.close(self.fd.id)

        with pytest.raises(FDNotFound):
            self.fds.close(self.fd.id)
        with pytest.raises(FDNotFound):
            self.fds.close("FD-09999")
        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("100000.00"))

    def test_close_frees_the_account_for_a_new_fd(self):
        self.fds.close(self.fd.id)
        assert self.fds.check_eligibility(self.account.id).eligible
        assert self.fds.create(self.account.id, Decimal("10000"), "3").id == "FD-00002"

    def test_close_into_inactive_account_rolls_back(self):
        self.system.accounts.set_status(self.account.id, AccountStatus.INACTIVE, "Dormant")

        with pytest.raises(AccountInactive):
            self.fds.close(self.fd.id)

        assert self.fds.get(self.fd.id).status == FDStatus.ACTIVE
        assert self.system.ledger.require_account(self.account.id).balance == Money(Decimal("50000.00"))

    def test_matured_fd_cannot_be_closed(self):
        assert self.fds.mark_matured(self.fd.id, date(2027, 1, 5))
        with pytest.raises(FDNotFound):
            self.fds.close(self.fd.id)


class TestFDRenewalAndQueries:

    def setup_method(self):
        self.clock = FakeClock()
        self.system = make_system(self.clock)
        self.fds = self.system.fixed_deposits
        self.account = open_account(self.system, "100000.00")
        self.fd = self.fds.create(self.account.id, Decimal("50000"), "0.5", EMPLOYEE_ID)

    def test_renew_active_fd(self):
        self.clock.advance(days=10)
        balance_before = self.system.ledger.require_account(self.account.id).balance

        renewed = self.fds.renew(self.fd.id, "3", EMPLOYEE_ID)

        assert renewed.id == "FD-00002"
        assert renewed.renewed_from == self.fd.id
        assert renewed.principal == self.fd.principal
        assert renewed.interest_rate == Decimal("15.00")
        assert renewed.start_date == date(2026, 1, 15)
        assert renewed.maturity_date == date(2029, 1, 15)
        assert self.fds.get(self.fd.id).status == FDStatus.MATURED
        assert self.system.ledger.require_account(self.account.id).balance == balance_before

    def test_renew_closed_fd_keeps_its_status(self):
        self.fds.close(self.fd.id)

        renewed = self.fds.renew(self.fd.id, "1")
        assert self.fds.get(self.fd.id).status == FDStatus.CLOSED
        assert renewed.is_active

    def test_renew_refused_when_another_fd_is_active(self):
        self.fds.close(self.fd.id)
        self.fds.create(self.account.id, Decimal("1000"), "1")

        with pytest.raises(IneligibleAccount):
            self.fds.renew(self.fd.id, "1")

    def test_renew_unknown_fd(self):
        with pytest.raises(FDNotFound):
            self.fds.renew("FD-09999", "1")

    def test_mark_matured(self):
        assert not self.fds.mark_matured(self.fd.id, date(2026, 7, 4))
        assert self.fds.mark_matured(self.fd.id, date(2026, 7, 5))
        assert not self.fds.mark_matured(self.fd.id, date(2026, 7, 6))
        assert self.fds.get(self.fd.id).status == FDStatus.MATURED

    def test_search(self):
        other = open_account(self.system, "20000", nic_number="198811112222")
        second = self.fds.create(other.id, Decimal("5000"), "1")
        self.fds.close(self.fd.id)

        assert [fd.id for fd in self.fds.search()] == [second.id, self.fd.id]
        assert [fd.id for fd in self.fds.search(status=FDStatus.ACTIVE)] == [second.id]
        assert [fd.id for fd in self.fds.search(term="0.5")] == [self.fd.id]
        assert [fd.id for fd in self.fds.search(account_id=other.id)] == [second.id]

    def test_summary(self):
        summary = self.fds.summary(self.fd.id)

        assert summary["status"] == "ACTIVE"
        assert summary["term"] == "6_MONTHS"
        assert summary["days_to_maturity"] == 181
        assert summary["monthly_interest"] == "541.67"
        assert summary["total_interests_paid"] == 0
        assert summary["last_interest_paid"] is None
        assert summary["current_value"] == "50000.00"
        assert self.fds.interest_history(self.fd.id) == []
