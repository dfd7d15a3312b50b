"""
Test suite for account management
"""

import pytest
from datetime import date
from decimal import Decimal

from branch_ledger.currency import Money
from branch_ledger.ledger import AccountStatus, TransactionType
from branch_ledger.accounts import age_from_birth_date, DEFAULT_ACCOUNT_TYPES
from branch_ledger.audit import AuditEventType
from branch_ledger.errors import InvalidAmount, AccountInactive

from ledger_fixtures import EMPLOYEE_ID, FakeClock, make_system, open_account


class TestAccountTypes:

    def setup_method(self):
        self.system = make_system()
        self.accounts = self.system.accounts

    def test_default_types_are_seeded_once(self):
        self.accounts.ensure_default_account_types()

        types = self.accounts.list_account_types()
        assert [t.name for t in types] == [row[0] for row in DEFAULT_ACCOUNT_TYPES]

        adult = self.accounts.get_account_type("AD")
        assert adult.interest_rate == Decimal("10.00")
        assert adult.minimum_balance == Money(Decimal("1000.00"))
        assert self.accounts.get_account_type_by_name("joint").type_code == "JT"

    @pytest.mark.parametrize("age,expected", [
        (0, "Children"), (5, "Children"), (12, "Children"),
        (13, "Teen"), (17, "Teen"),
        (18, "Adult"), (59, "Adult"),
        (60, "Senior"), (92, "Senior"),
    ])
    def test_eligible_type_by_age(self, age, expected):
        assert self.accounts.eligible_account_type(age).name == expected

    def test_custom_type(self):
        account_type = self.accounts.create_account_type("Student", "st", Decimal("9.5"), "250", 16, 25)

        assert account_type.id == "ST"
        assert self.accounts.get_account_type("ST").minimum_balance == Money(Decimal("250.00"))
        events = self.system.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_TYPE_CREATED)
        assert events[-1].entity_id == "ST"

    def test_negative_rate_is_rejected(self):
        with pytest.raises(ValueError):
            self.accounts.create_account_type("Broken", "BR", Decimal("-1"), "0")


class TestAgeCalculation:

    def test_birthday_not_yet_reached(self):
        assert age_from_birth_date(date(1990, 5, 17), date(2026, 5, 16)) == 35
        assert age_from_birth_date(date(1990, 5, 17), date(2026, 5, 17)) == 36

    def test_leap_day_birthday(self):
        assert age_from_birth_date(date(2008, 2, 29), date(2026, 2, 28)) == 17
        assert age_from_birth_date(date(2008, 2, 29), date(2026, 3, 1)) == 18


class TestBranchesAndCustomers:

    def setup_method(self):
        self.system = make_system()
        self.accounts = self.system.accounts

    def test_branch_ids(self):
        first = self.accounts.register_branch("Colombo Main", "No. 1, Galle Road", "Colombo")
        second = self.accounts.register_branch("Kandy", "Dalada Veediya", "Kandy")

        assert first.id == "001"
        assert second.id == "002"
        assert self.accounts.get_branch("002").branch_name == "Kandy"

    def test_customer_ids_and_nic_reuse(self):
        first = self.accounts.register_customer("Nimal", "Perera", "199012345678", date(1990, 5, 17))
        second = self.accounts.register_customer("Kamala", "Silva", "198511112222", date(1985, 1, 2))
        again = self.accounts.register_customer("Nimal", "Perera", "199012345678", date(1990, 5, 17))

        assert first.id == "C000001"
        assert second.id == "C000002"
        assert again.id == first.id
        assert self.accounts.find_customer_by_nic("198511112222").full_name == "Kamala Silva"

    def test_eligible_type_for_customer(self):
        teen = self.accounts.register_customer("Sahan", "Fernando", "201012345678", date(2010, 3, 1))
        assert self.accounts.eligible_account_type_for_customer(teen.id).name == "Teen"

        with pytest.raises(ValueError):
            self.accounts.eligible_account_type_for_customer("C999999")


class TestAccountOpening:

    def setup_method(self):
        self.clock = FakeClock()
        self.system = make_system(self.clock)
        self.accounts = self.system.accounts

    def test_open_account(self):
        account = open_account(self.system, "25000.00")

        assert account.id == "AD-001-042-00001"
        assert account.branch_id == "001"
        assert account.balance == Money(Decimal("25000.00"))
        assert account.status == AccountStatus.ACTIVE
        assert account.opened_by == EMPLOYEE_ID
        assert account.opened_at == self.clock.now

        transactions = self.system.ledger.get_account_transactions(account.id)
        assert len(transactions) == 1
        assert transactions[0].transaction_type == TransactionType.INITIAL
        assert transactions[0].amount == Money(Decimal("25000.00"))

        events = self.system.audit_trail.get_events_for_entity("account", account.id)
        assert events[0].event_type == AuditEventType.ACCOUNT_OPENED

    def test_account_ids_increment_per_agent(self):
        first = open_account(self.system, "2000")
        second = open_account(self.system, "2000", nic_number="198811112222")
        other_agent = open_account(self.system, "2000", nic_number="197711112222", employee_id="EMP007")

        assert first.id == "AD-001-042-00001"
        assert second.id == "AD-001-042-00002"
        assert other_agent.id == "AD-001-007-00001"

    def test_deposit_below_minimum(self):
        with pytest.raises(InvalidAmount):
            open_account(self.system, "999.99")
        assert self.accounts.list_accounts() == []

    def test_unknown_type_and_branch(self):
        open_account(self.system, "5000")
        customer = self.accounts.find_customer_by_nic("199012345678")

        with pytest.raises(ValueError):
            self.accounts.open_account("XX", "001", EMPLOYEE_ID, Decimal("5000"), [customer.id])
        with pytest.raises(ValueError):
            self.accounts.open_account("AD", "009", EMPLOYEE_ID, Decimal("5000"), [customer.id])
        with pytest.raises(ValueError):
            self.accounts.open_account("AD", "001", EMPLOYEE_ID, Decimal("5000"), ["C999999"])

    def test_joint_account_needs_two_customers(self):
        open_account(self.system, "5000")
        first = self.accounts.find_customer_by_nic("199012345678")
        second = self.accounts.register_customer("Kamala", "Perera", "199212345678", date(1992, 8, 1))

        with pytest.raises(ValueError):
            self.accounts.open_account("JT", "001", EMPLOYEE_ID, Decimal("6000"), [first.id])

        joint = self.accounts.open_account("JT", "001", EMPLOYEE_ID, Decimal("6000"),
                                           [first.id, second.id])
        assert joint.id == "JT-001-042-00001"
        assert joint.customer_ids == [first.id, second.id]

    def test_deactivate_account(self):
        account = open_account(self.system, "5000")

        updated = self.accounts.set_status(account.id, AccountStatus.INACTIVE, "Customer request", EMPLOYEE_ID)
        assert updated.status == AccountStatus.INACTIVE
        assert self.accounts.list_accounts(AccountStatus.ACTIVE) == []
        assert [a.id for a in self.accounts.list_accounts(AccountStatus.INACTIVE)] == [account.id]

        with pytest.raises(AccountInactive):
            self.system.ledger.credit(account.id, Decimal("10"), "Cash deposit")

        self.accounts.set_status(account.id, AccountStatus.ACTIVE, "Reactivated")
        self.system.ledger.credit(account.id, Decimal("10"), "Cash deposit")
        assert self.accounts.require_account(account.id).balance == Money(Decimal("5010.00"))

        status_events = self.system.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_STATUS_CHANGED)
        assert [e.metadata["new_status"] for e in status_events] == ["INACTIVE", "ACTIVE"]
