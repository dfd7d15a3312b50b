"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and that audit events
share the fate of the operation that produced them.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from branch_ledger.storage import InMemoryStorage
from branch_ledger.audit import AuditTrail, AuditEvent, AuditEventType
from branch_ledger.errors import InsufficientFunds

from ledger_fixtures import make_system, open_account


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="EVT1",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.FD_CREATED,
            entity_type="fixed_deposit",
            entity_id="FD-00001",
            previous_hash="",
            current_hash="",
            metadata={
                "principal": Decimal("50000.00"),
                "start": now,
                "type": AuditEventType.FD_CREATED,
                "tags": (Decimal("1"), "x")
            }
        )

        assert event.metadata["principal"] == "50000.00"
        assert event.metadata["start"] == now.isoformat()
        assert event.metadata["type"] == "fd_created"
        assert event.metadata["tags"] == ["1", "x"]

    def test_hash_round_trip(self):
        trail = AuditTrail(InMemoryStorage())
        event = trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "AD-001-042-00001",
                                {"initial_deposit": Decimal("1000")}, user_id="EMP042")

        assert event.verify_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.verify_hash()
        assert restored.current_hash == event.current_hash


class TestAuditTrail:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")
        second = self.trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "TXN-00001")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert self.trail.count_events() == 2

        result = self.trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_tampered_metadata_is_detected(self):
        self.trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "TXN-00001",
                             {"amount": Decimal("100.00")})
        target = self.trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "TXN-00002",
                                      {"amount": Decimal("200.00")})
        self.trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "TXN-00003")

        record = self.storage.load("audit_events", target.id)
        record["metadata"]["amount"] = "2000.00"
        self.storage.save("audit_events", target.id, record)

        result = self.trail.verify_integrity()
        assert not result["valid"]
        assert [e["event_id"] for e in result["hash_errors"]] == [target.id]
        assert result["chain_breaks"] == []

    def test_rewritten_chain_link_is_detected(self):
        self.trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")
        second = self.trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A2")

        record = self.storage.load("audit_events", second.id)
        record["previous_hash"] = "0" * 64
        self.storage.save("audit_events", second.id, record)

        result = self.trail.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"][0]["event_id"] == second.id

    def test_queries(self):
        self.trail.log_event(AuditEventType.FD_CREATED, "fixed_deposit", "FD-00001")
        self.trail.log_event(AuditEventType.FD_CLOSED, "fixed_deposit", "FD-00001")
        self.trail.log_event(AuditEventType.FD_CREATED, "fixed_deposit", "FD-00002")

        assert len(self.trail.get_events_for_entity("fixed_deposit", "FD-00001")) == 2
        assert len(self.trail.get_events_for_entity("fixed_deposit", "FD-00001", limit=1)) == 1
        created = self.trail.get_events_by_type(AuditEventType.FD_CREATED)
        assert [e.entity_id for e in created] == ["FD-00001", "FD-00002"]

    def test_chain_head_is_read_without_a_scan(self, monkeypatch):
        first = self.trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")

        def no_scan(table):
            raise AssertionError(f"full scan of {table}")

        monkeypatch.setattr(self.storage, "load_all", no_scan)
        second = self.trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A2")
        monkeypatch.undo()

        assert second.previous_hash == first.current_hash
        assert self.trail.verify_integrity()["valid"]

    def test_disabled_trail_records_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1") is None
        assert trail.count_events() == 0


class TestAuditWithLedger:

    def test_rolled_back_operation_leaves_no_event(self):
        system = make_system()
        account = open_account(system, "5000")
        before = system.audit_trail.count_events()

        with pytest.raises(InsufficientFunds):
            system.ledger.debit(account.id, Decimal("4500"), "Cash withdrawal")

        assert system.audit_trail.count_events() == before
        assert system.audit_trail.verify_integrity()["valid"]
