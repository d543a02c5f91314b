import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from models import BankAccount, Contract, RecurrenceRule, Transaction, TransactionStatus
from notifications import change_bridge
from scheduler import SchedulerManager
from schemas import (
    BankAccountIn,
    ContractIn,
    EditScope,
    OccurrenceChanges,
    RecurrenceRuleIn,
    TransactionIn,
)
from services import (
    AccountService,
    ContractService,
    InstallmentService,
    RecurrenceRuleService,
    TransactionService,
)

scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # The startup cycle touches the database; keep it off the event loop.
    await run_in_threadpool(scheduler_manager.start)
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="Contract Ledger", lifespan=lifespan)

change_bridge.attach(SessionLocal)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


ERROR_STATUS = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransientStoreError, 503),
)


def _error_response(_request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)
    )
    if status_code == 503:
        logging.warning(f"store_unavailable: error={exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


for _error_type, _status in ERROR_STATUS:
    app.add_exception_handler(_error_type, _error_response)


def account_out(account: BankAccount) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "current_balance_cents": account.current_balance_cents,
        "is_active": account.is_active,
    }


def contract_out(contract: Contract) -> dict[str, object]:
    rule = contract.current_rule
    return {
        "id": contract.id,
        "name": contract.name,
        "description": contract.description,
        "kind": contract.kind.value,
        "amount_cents": contract.amount_cents,
        "frequency": contract.frequency.value,
        "start_date": contract.start_date.isoformat(),
        "end_date": contract.end_date.isoformat() if contract.end_date else None,
        "bank_account_id": contract.bank_account_id,
        "is_active": contract.is_active,
        "auto_generate": contract.auto_generate,
        "total_installments": contract.total_installments,
        "last_generated_date": (
            contract.last_generated_date.isoformat()
            if contract.last_generated_date
            else None
        ),
        "current_rule_id": rule.id if rule else None,
    }


def rule_out(rule: RecurrenceRule) -> dict[str, object]:
    return {
        "id": rule.id,
        "name": rule.name,
        "kind": rule.kind.value,
        "amount_cents": rule.amount_cents,
        "frequency": rule.frequency.value,
        "anchor_date": rule.anchor_date.isoformat(),
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "is_active": rule.is_active,
        "account_from_id": rule.account_from_id,
        "account_to_id": rule.account_to_id,
        "contract_id": rule.contract_id,
        "previous_rule_id": rule.previous_rule_id,
        "total_installments": rule.total_installments,
    }


def transaction_out(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "rule_id": txn.rule_id,
        "contract_id": txn.contract_id,
        "occurrence_date": (
            txn.occurrence_date.isoformat() if txn.occurrence_date else None
        ),
        "due_date": txn.due_date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "status": txn.status.value,
        "account_from_id": txn.account_from_id,
        "account_to_id": txn.account_to_id,
        "description": txn.description,
        "paid_at": txn.paid_at.isoformat() if txn.paid_at else None,
    }


@app.get("/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_out(account) for account in AccountService(db).list_all()]


@app.post("/accounts", status_code=201)
def create_account(data: BankAccountIn, db: Session = Depends(get_db)):
    return account_out(AccountService(db).create(data))


@app.get("/accounts/projections")
def account_projections(db: Session = Depends(get_db)):
    return InstallmentService(db).projections()


@app.get("/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    return account_out(AccountService(db).get(account_id))


@app.get("/accounts/{account_id}/projected-balance")
def projected_balance(account_id: int, db: Session = Depends(get_db)):
    balance = InstallmentService(db).get_projected_balance(account_id)
    return {"account_id": account_id, "projected_balance_cents": balance}


@app.get("/contracts")
def list_contracts(include_inactive: bool = False, db: Session = Depends(get_db)):
    service = ContractService(db)
    return [contract_out(c) for c in service.list_all(include_inactive)]


@app.post("/contracts", status_code=201)
def create_contract(data: ContractIn, db: Session = Depends(get_db)):
    contract = ContractService(db).create(data)
    logging.info(
        f"contract_created: contract_id={contract.id} kind={contract.kind.value} "
        f"frequency={contract.frequency.value}"
    )
    return contract_out(contract)


@app.get("/contracts/statistics")
def contract_statistics(db: Session = Depends(get_db)):
    return ContractService(db).get_statistics()


@app.get("/contracts/{contract_id}")
def get_contract(contract_id: int, db: Session = Depends(get_db)):
    return contract_out(ContractService(db).get(contract_id))


@app.post("/contracts/{contract_id}/deactivate")
def deactivate_contract(contract_id: int, db: Session = Depends(get_db)):
    return contract_out(ContractService(db).deactivate(contract_id))


@app.get("/rules")
def list_rules(db: Session = Depends(get_db)):
    return [rule_out(rule) for rule in RecurrenceRuleService(db).list()]


@app.post("/rules", status_code=201)
def create_rule(data: RecurrenceRuleIn, db: Session = Depends(get_db)):
    return rule_out(RecurrenceRuleService(db).create(data))


@app.get("/rules/{rule_id}")
def get_rule(rule_id: int, db: Session = Depends(get_db)):
    return rule_out(RecurrenceRuleService(db).get(rule_id))


@app.get("/transactions")
def list_transactions(
    status: Optional[TransactionStatus] = None,
    rule_id: Optional[int] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    items = TransactionService(db).list(
        status=status, rule_id=rule_id, account_id=account_id
    )
    return [transaction_out(txn) for txn in items]


@app.post("/transactions", status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).create(data))


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).get(transaction_id))


@app.patch("/transactions/{transaction_id}")
def edit_transaction(
    transaction_id: int,
    changes: OccurrenceChanges,
    scope: EditScope = EditScope.this,
    db: Session = Depends(get_db),
):
    return InstallmentService(db).resolve_edit(transaction_id, scope, changes)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    scope: EditScope = EditScope.this,
    db: Session = Depends(get_db),
):
    return InstallmentService(db).cancel_occurrences(transaction_id, scope)


@app.post("/transactions/{transaction_id}/settle")
def settle_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).settle(transaction_id))


@app.post("/transactions/{transaction_id}/cancel")
def cancel_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return transaction_out(TransactionService(db).cancel(transaction_id))


@app.post("/installments/generate")
def generate_installments(horizon: Optional[date] = None, db: Session = Depends(get_db)):
    report = InstallmentService(db).generate_installments(horizon)
    logging.info(
        f"generation_requested: horizon={horizon} created={report.occurrences_created} "
        f"failed={len(report.errors)}"
    )
    return report


@app.post("/installments/mark-overdue")
def mark_overdue(db: Session = Depends(get_db)):
    return {"marked": TransactionService(db).mark_overdue()}
