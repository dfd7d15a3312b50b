"""
Reference and identifier generation.

Identifiers are human-readable sequences derived from the current maximum in
storage. The append-heavy transaction and FD tables read only their newest
row, so minting an id there does not scan the table. Ids must be minted
inside the same ``atomic()`` block as the insert that uses them; a concurrent
writer that wins the race makes the insert fail with DuplicateIdentifier, and
the caller retries with a fresh read.
"""

import re
import secrets
import string
from typing import Optional, Pattern

from .storage import StorageInterface


CUSTOMER_ID_PATTERN = re.compile(r"^C(\d{6})$")
FD_ID_PATTERN = re.compile(r"^FD-(\d+)$")
BRANCH_ID_PATTERN = re.compile(r"^(\d{3})$")
TRANSACTION_ID_PATTERN = re.compile(r"^TXN-(\d+)$")

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
REFERENCE_LENGTH = 8


def agent_suffix(employee_id: Optional[str]) -> str:
    """Last three characters of the employee id, left-padded with zeros"""
    if not employee_id:
        return "000"
    return str(employee_id)[-3:].rjust(3, "0")


def generate_reference_number() -> str:
    """Random external reference such as REF-7K2Q9ZPA"""
    return "REF-" + "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))


class IdGenerator:
    """Mints sequential identifiers for every entity kind"""

    def __init__(
        self,
        storage: StorageInterface,
        customers_table: str = "customers",
        branches_table: str = "branches",
        accounts_table: str = "accounts",
        transactions_table: str = "transactions",
        fixed_deposits_table: str = "fixed_deposits"
    ):
        self.storage = storage
        self.customers_table = customers_table
        self.branches_table = branches_table
        self.accounts_table = accounts_table
        self.transactions_table = transactions_table
        self.fixed_deposits_table = fixed_deposits_table

    def _max_sequence(self, table: str, pattern: Pattern) -> int:
        highest = 0
        for record in self.storage.load_all(table):
            match = pattern.match(record.get('id', ''))
            if match:
                highest = max(highest, int(match.group(1)))
        return highest

    def _last_sequence(self, table: str, pattern: Pattern) -> int:
        """
        Sequence of the newest row. Only valid for tables whose ids are minted
        here in insertion order, where the newest row carries the maximum.
        """
        record = self.storage.last_record(table)
        match = pattern.match(record.get('id', '')) if record else None
        return int(match.group(1)) if match else 0

    def next_customer_id(self) -> str:
        return f"C{self._max_sequence(self.customers_table, CUSTOMER_ID_PATTERN) + 1:06d}"

    def next_branch_id(self) -> str:
        return f"{self._max_sequence(self.branches_table, BRANCH_ID_PATTERN) + 1:03d}"

    def next_fd_id(self) -> str:
        return f"FD-{self._last_sequence(self.fixed_deposits_table, FD_ID_PATTERN) + 1:05d}"

    def next_transaction_id(self) -> str:
        return f"TXN-{self._last_sequence(self.transactions_table, TRANSACTION_ID_PATTERN) + 1:05d}"

    def next_account_id(self, type_code: str, branch_id: str, agent: str) -> str:
        """
        Account ids look like AD-001-042-00007.

        The sequence is scoped to the exact type/branch/agent prefix, so two
        agents at the same branch number their accounts independently.
        """
        prefix = f"{type_code.upper()}-{str(branch_id).zfill(3)}-{agent}-"
        pattern = re.compile("^" + re.escape(prefix) + r"(\d+)$")
        return f"{prefix}{self._max_sequence(self.accounts_table, pattern) + 1:05d}"
