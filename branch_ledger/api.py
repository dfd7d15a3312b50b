"""
FastAPI REST API Module

Thin REST surface over the ledger: branches, customers, accounts, deposits,
withdrawals, transfers, Fixed Deposit operations, manual job triggers and
audit verification. The acting employee is taken from the X-Employee-Id
header set by the upstream identity provider. Runs on port 8090.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from typing import Dict, List, Optional, Any
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .errors import (
    LedgerError, AccountNotFound, FDNotFound, InvalidAmount, AccountInactive,
    InsufficientFunds, SameAccount, IneligibleAccount, InvalidTerm,
    DuplicateIdentifier, ConcurrencyConflict, IdempotencyConflict, StorageTimeout
)
from .ledger import Account, AccountStatus, AccountType, Transaction, TransactionType
from .fixed_deposits import FixedDeposit, FDStatus
from .system import LedgerSystem
from .config import get_config
from .logging_config import setup_logging, get_logger


ERROR_STATUS = {
    AccountNotFound: status.HTTP_404_NOT_FOUND,
    FDNotFound: status.HTTP_404_NOT_FOUND,
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    AccountInactive: status.HTTP_400_BAD_REQUEST,
    InsufficientFunds: status.HTTP_400_BAD_REQUEST,
    SameAccount: status.HTTP_400_BAD_REQUEST,
    IneligibleAccount: status.HTTP_400_BAD_REQUEST,
    InvalidTerm: status.HTTP_400_BAD_REQUEST,
    DuplicateIdentifier: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    IdempotencyConflict: status.HTTP_409_CONFLICT,
    StorageTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
}

logger = get_logger("branch_ledger.api")


# Pydantic models for API requests
class CreateBranchRequest(BaseModel):
    branch_name: str
    address: Optional[str] = None
    district: Optional[str] = None


class CreateCustomerRequest(BaseModel):
    first_name: str
    last_name: str
    nic_number: str
    date_of_birth: date


class CreateAccountTypeRequest(BaseModel):
    name: str
    type_code: str = Field(..., min_length=1, max_length=4)
    interest_rate: Decimal = Field(..., description="Annual rate in percent")
    minimum_balance: Decimal = Decimal("0")
    min_age: int = 0
    max_age: Optional[int] = None


class OpenAccountRequest(BaseModel):
    account_type_id: str
    branch_id: str
    customer_ids: List[str]
    initial_deposit: Decimal


class AccountStatusRequest(BaseModel):
    status: str = Field(..., description="ACTIVE or INACTIVE")
    reason: str


class PostingRequest(BaseModel):
    account_id: str
    amount: Decimal
    description: str = ""
    idempotency_key: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: Decimal
    description: str = ""


class CreateFDRequest(BaseModel):
    account_id: str
    principal: Decimal
    term: str = Field(..., description="Term in years: 0.5, 1 or 3")


class RenewFDRequest(BaseModel):
    term: str = Field(..., description="Term in years: 0.5, 1 or 3")


# Response views
def account_type_view(account_type: AccountType) -> Dict[str, Any]:
    return {
        "id": account_type.id,
        "name": account_type.name,
        "type_code": account_type.type_code,
        "interest_rate": str(account_type.interest_rate),
        "minimum_balance": str(account_type.minimum_balance.amount),
        "min_age": account_type.min_age,
        "max_age": account_type.max_age
    }


def account_view(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_type_id": account.account_type_id,
        "branch_id": account.branch_id,
        "customer_ids": account.customer_ids,
        "balance": str(account.balance.amount),
        "currency": account.balance.currency.code,
        "status": account.status.value,
        "opened_at": account.opened_at.isoformat(),
        "opened_by": account.opened_by
    }


def transaction_view(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "transaction_type": txn.transaction_type.code,
        "amount": str(txn.amount.amount),
        "effect": str(txn.effect.amount),
        "balance_before": str(txn.balance_before.amount),
        "balance_after": str(txn.balance_after.amount),
        "timestamp": txn.timestamp.isoformat(),
        "description": txn.description,
        "reference_number": txn.reference_number,
        "employee_id": txn.employee_id,
        "fd_id": txn.fd_id
    }


def fd_view(fd: FixedDeposit) -> Dict[str, Any]:
    return {
        "id": fd.id,
        "account_id": fd.account_id,
        "term": fd.term.label,
        "principal": str(fd.principal.amount),
        "interest_rate": str(fd.interest_rate),
        "start_date": fd.start_date.isoformat(),
        "maturity_date": fd.maturity_date.isoformat(),
        "status": fd.status.value,
        "renewed_from": fd.renewed_from,
        "closed_at": fd.closed_at.isoformat() if fd.closed_at else None
    }


def _parse_enum(enum_cls, value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}: {value}")


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Build the FastAPI app around a LedgerSystem"""
    system = system or LedgerSystem()
    system.accounts.ensure_default_account_types()

    app = FastAPI(
        title="Branch Ledger API",
        description="Ledger and Fixed Deposit engine for branch banking",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        if code >= 500:
            logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=code,
            content={"error": exc.kind, "detail": exc.message, "retryable": exc.retryable}
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "ValidationError", "detail": str(exc)})

    def get_system(request: Request) -> LedgerSystem:
        return request.app.state.system

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    # Branches and customers

    @app.post("/branches", status_code=status.HTTP_201_CREATED)
    def register_branch(request: CreateBranchRequest, system: LedgerSystem = Depends(get_system)):
        branch = system.accounts.register_branch(request.branch_name, request.address, request.district)
        return {"branch_id": branch.id, "branch_name": branch.branch_name}

    @app.post("/customers", status_code=status.HTTP_201_CREATED)
    def register_customer(
        request: CreateCustomerRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        customer = system.accounts.register_customer(
            request.first_name, request.last_name, request.nic_number,
            request.date_of_birth, x_employee_id
        )
        return {"customer_id": customer.id, "full_name": customer.full_name}

    @app.get("/customers/{customer_id}/eligible-account-type")
    def eligible_account_type(customer_id: str, system: LedgerSystem = Depends(get_system)):
        account_type = system.accounts.eligible_account_type_for_customer(customer_id)
        if not account_type:
            raise HTTPException(status_code=404, detail="No account type for this customer's age")
        return account_type_view(account_type)

    # Accounts

    @app.get("/accounts/types")
    def list_account_types(system: LedgerSystem = Depends(get_system)):
        return {"account_types": [account_type_view(t) for t in system.accounts.list_account_types()]}

    @app.post("/accounts/types", status_code=status.HTTP_201_CREATED)
    def create_account_type(request: CreateAccountTypeRequest, system: LedgerSystem = Depends(get_system)):
        account_type = system.accounts.create_account_type(
            request.name, request.type_code, request.interest_rate,
            request.minimum_balance, request.min_age, request.max_age
        )
        return account_type_view(account_type)

    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    def open_account(
        request: OpenAccountRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        account = system.accounts.open_account(
            request.account_type_id, request.branch_id, x_employee_id,
            request.initial_deposit, request.customer_ids
        )
        return account_view(account)

    @app.get("/accounts")
    def list_accounts(status_filter: Optional[str] = Query(None, alias="status"),
                      system: LedgerSystem = Depends(get_system)):
        account_status = _parse_enum(AccountStatus, status_filter, "status")
        return {"accounts": [account_view(a) for a in system.accounts.list_accounts(account_status)]}

    @app.get("/accounts/{account_id}")
    def get_account(account_id: str, system: LedgerSystem = Depends(get_system)):
        return account_view(system.accounts.require_account(account_id))

    @app.put("/accounts/{account_id}/status")
    def set_account_status(
        account_id: str,
        request: AccountStatusRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        new_status = _parse_enum(AccountStatus, request.status, "status")
        account = system.accounts.set_status(account_id, new_status, request.reason, x_employee_id)
        return account_view(account)

    @app.get("/accounts/{account_id}/transactions")
    def account_transactions(
        account_id: str,
        transaction_type: Optional[str] = None,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        system: LedgerSystem = Depends(get_system)
    ):
        system.ledger.require_account(account_id)
        types = [TransactionType.from_code(transaction_type.upper())] if transaction_type else None
        transactions = system.ledger.get_account_transactions(
            account_id, transaction_types=types, limit=limit, offset=offset
        )
        return {"transactions": [transaction_view(t) for t in transactions]}

    @app.get("/accounts/{account_id}/running-balance")
    def verify_running_balance(account_id: str, system: LedgerSystem = Depends(get_system)):
        return system.ledger.verify_running_balance(account_id)

    # Ledger postings

    @app.post("/ledger/deposit")
    def deposit(
        request: PostingRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        txn = system.ledger.credit(
            request.account_id, request.amount, request.description or "Cash deposit",
            TransactionType.DEPOSIT, x_employee_id, idempotency_key=request.idempotency_key
        )
        return transaction_view(txn)

    @app.post("/ledger/withdraw")
    def withdraw(
        request: PostingRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        txn = system.ledger.debit(
            request.account_id, request.amount, request.description or "Cash withdrawal",
            TransactionType.WITHDRAWAL, x_employee_id, idempotency_key=request.idempotency_key
        )
        return transaction_view(txn)

    @app.post("/ledger/transfer")
    def transfer(
        request: TransferRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        outgoing, incoming = system.ledger.transfer(
            request.from_account_id, request.to_account_id, request.amount,
            request.description or "Fund transfer", x_employee_id
        )
        return {"out": transaction_view(outgoing), "in": transaction_view(incoming)}

    # Fixed deposits

    @app.get("/fixed-deposits/check-account/{account_id}")
    def check_fd_eligibility(account_id: str, system: LedgerSystem = Depends(get_system)):
        account = system.accounts.require_account(account_id)
        result = system.fixed_deposits.check_eligibility(account_id)
        return {
            "account_id": account_id,
            "eligible": result.eligible,
            "reason": result.reason,
            "account_type": result.account_type_name,
            "balance": str(account.balance.amount),
            "customer_ids": account.customer_ids
        }

    @app.post("/fixed-deposits/create", status_code=status.HTTP_201_CREATED)
    def create_fd(
        request: CreateFDRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        fd = system.fixed_deposits.create(request.account_id, request.principal, request.term, x_employee_id)
        return fd_view(fd)

    @app.post("/fixed-deposits/renew/{fd_id}", status_code=status.HTTP_201_CREATED)
    def renew_fd(
        fd_id: str,
        request: RenewFDRequest,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        fd = system.fixed_deposits.renew(fd_id, request.term, x_employee_id)
        return fd_view(fd)

    @app.post("/fixed-deposits/close/{fd_id}")
    def close_fd(
        fd_id: str,
        system: LedgerSystem = Depends(get_system),
        x_employee_id: Optional[str] = Header(None)
    ):
        result = system.fixed_deposits.close(fd_id, x_employee_id)
        return {
            "fd_id": fd_id,
            "principal_returned": str(result.principal_returned.amount),
            "pending_interest_paid": str(result.pending_interest_paid.amount),
            "total_returned": str(result.total_returned.amount),
            "transactions": [transaction_view(t) for t in result.transactions]
        }

    @app.get("/fixed-deposits/search")
    def search_fds(
        status_filter: Optional[str] = Query(None, alias="status"),
        term: Optional[str] = None,
        account_id: Optional[str] = None,
        system: LedgerSystem = Depends(get_system)
    ):
        fd_status = _parse_enum(FDStatus, status_filter, "status")
        deposits = system.fixed_deposits.search(fd_status, term, account_id)
        return {"fixed_deposits": [fd_view(fd) for fd in deposits]}

    @app.get("/fixed-deposits/{fd_id}")
    def get_fd(fd_id: str, system: LedgerSystem = Depends(get_system)):
        return system.fixed_deposits.summary(fd_id)

    @app.get("/fixed-deposits/{fd_id}/interest-history")
    def fd_interest_history(fd_id: str, system: LedgerSystem = Depends(get_system)):
        history = system.fixed_deposits.interest_history(fd_id)
        return {"fd_id": fd_id, "payments": [transaction_view(t) for t in history]}

    # Scheduler and audit

    @app.post("/scheduler/{job}")
    def run_job(job: str, today: Optional[date] = None, system: LedgerSystem = Depends(get_system)):
        result = system.scheduler.run_job(job, today)
        return result.to_dict()

    @app.get("/audit/verify")
    def verify_audit(system: LedgerSystem = Depends(get_system)):
        return system.audit_trail.verify_integrity()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server with the background scheduler"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    system = LedgerSystem(config=config)
    system.start_scheduler()
    try:
        uvicorn.run(
            create_app(system),
            host=host or config.api_host,
            port=port or config.api_port,
            log_level="debug" if debug else "info"
        )
    finally:
        system.close()
