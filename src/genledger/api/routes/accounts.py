"""Account ledger API endpoints.

- POST /api/accounts/{account_id}/initialize - Create account with signup bonus (idempotent)
- GET /api/accounts/{account_id}/balance - Current balance and lifetime usage
- POST /api/accounts/{account_id}/tokens/use - Debit tokens
- POST /api/accounts/{account_id}/tokens/add - Credit tokens
- POST /api/accounts/{account_id}/tokens/purchase - Credit a confirmed package purchase
- GET /api/accounts/{account_id}/transactions - Paginated transaction history
- GET /api/accounts/{account_id}/generations - Paginated generation history
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_services, to_http_exception
from genledger.api.routes.generations import GenerationJobDTO
from genledger.models.account import AccountBalance
from genledger.models.transaction import TokenTransaction, TransactionType
from genledger.services.container import Services
from genledger.services.exceptions import GenLedgerError
from genledger.services.ledger import client_key

logger = structlog.get_logger()
router = APIRouter(prefix="/api/accounts", tags=["accounts"])


def _scoped_key(account_id: str, key: Optional[str]) -> Optional[str]:
    # Caller keys never share a namespace with signup:, usage:, refund:, purchase:
    return client_key(account_id, key) if key else None


# Request/Response Models


class AccountResponse(BaseModel):
    account_id: str
    balance: int = Field(..., description="Spendable tokens")
    total_used: int = Field(..., description="Tokens consumed by usage debits, lifetime")
    created_at: datetime

    @classmethod
    def from_account(cls, account: AccountBalance) -> "AccountResponse":
        return cls(
            account_id=account.account_id,
            balance=account.balance,
            total_used=account.total_used,
            created_at=account.created_at,
        )


class UseTokensRequest(BaseModel):
    """Request model for debiting tokens."""

    amount: int = Field(..., description="Tokens to debit (must be positive)")
    description: str = Field(default="Token usage", max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(
        default=None, max_length=200, description="Replaying a key returns the original transaction"
    )


class AddTokensRequest(BaseModel):
    """Request model for crediting tokens."""

    amount: int = Field(..., description="Tokens to credit (must be positive)")
    type: Literal["bonus", "purchase", "refund"] = Field(default="purchase")
    description: str = Field(default="Token purchase", max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=200)


class PurchaseRequest(BaseModel):
    """Request model for crediting a confirmed package purchase."""

    package_id: str = Field(..., description="basic, popular, recommended or premium")
    payment_key: str = Field(
        ..., min_length=1, max_length=200, description="Payment gateway confirmation key"
    )


class TransactionDTO(BaseModel):
    id: UUID
    amount: int = Field(..., description="Signed amount: positive credit, negative debit")
    type: str
    description: str
    reference_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_transaction(cls, transaction: TokenTransaction) -> "TransactionDTO":
        return cls(
            id=transaction.id,
            amount=transaction.amount,
            type=transaction.type.value,
            description=transaction.description,
            reference_id=transaction.reference_id,
            created_at=transaction.created_at,
        )


class TransactionResultResponse(BaseModel):
    transaction: TransactionDTO
    balance: int = Field(..., description="Balance after the operation")


class TransactionsResponse(BaseModel):
    transactions: list[TransactionDTO]
    total: int
    offset: int
    limit: int


class GenerationsResponse(BaseModel):
    jobs: list[GenerationJobDTO]
    total: int
    offset: int
    limit: int


# API Endpoints


@router.post("/{account_id}/initialize", response_model=AccountResponse, status_code=status.HTTP_200_OK)
async def initialize_account(
    account_id: str,
    services: Services = Depends(get_services),
) -> AccountResponse:
    """Create the account with its signup bonus; returns the existing account if present."""
    try:
        account = await services.ledger.ensure_account(account_id)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return AccountResponse.from_account(account)


@router.get("/{account_id}/balance", response_model=AccountResponse, status_code=status.HTTP_200_OK)
async def get_balance(
    account_id: str,
    services: Services = Depends(get_services),
) -> AccountResponse:
    """Get balance and lifetime usage.

    Raises:
        HTTPException 404: Account not initialized
    """
    try:
        account = await services.ledger.get_account(account_id)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return AccountResponse.from_account(account)


@router.post(
    "/{account_id}/tokens/use", response_model=TransactionResultResponse, status_code=status.HTTP_200_OK
)
async def use_tokens(
    account_id: str,
    request: UseTokensRequest,
    services: Services = Depends(get_services),
) -> TransactionResultResponse:
    """Debit tokens atomically.

    Raises:
        HTTPException 400: Non-positive amount, or idempotency key reused for another operation
        HTTPException 402: Balance below amount (nothing is debited)
        HTTPException 404: Account not initialized
    """
    try:
        transaction = await services.ledger.use_tokens(
            account_id,
            request.amount,
            description=request.description,
            reference_id=request.reference_id,
            idempotency_key=_scoped_key(account_id, request.idempotency_key),
        )
        balance = await services.ledger.get_balance(account_id)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return TransactionResultResponse(
        transaction=TransactionDTO.from_transaction(transaction), balance=balance
    )


@router.post(
    "/{account_id}/tokens/add", response_model=TransactionResultResponse, status_code=status.HTTP_200_OK
)
async def add_tokens(
    account_id: str,
    request: AddTokensRequest,
    services: Services = Depends(get_services),
) -> TransactionResultResponse:
    """Credit tokens.

    Raises:
        HTTPException 400: Non-positive amount, or idempotency key reused for another operation
        HTTPException 404: Account not initialized
    """
    try:
        transaction = await services.ledger.add_tokens(
            account_id,
            request.amount,
            type=TransactionType(request.type),
            description=request.description,
            reference_id=request.reference_id,
            idempotency_key=_scoped_key(account_id, request.idempotency_key),
        )
        balance = await services.ledger.get_balance(account_id)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return TransactionResultResponse(
        transaction=TransactionDTO.from_transaction(transaction), balance=balance
    )


@router.post(
    "/{account_id}/tokens/purchase",
    response_model=TransactionResultResponse,
    status_code=status.HTTP_200_OK,
)
async def purchase_package(
    account_id: str,
    request: PurchaseRequest,
    services: Services = Depends(get_services),
) -> TransactionResultResponse:
    """Credit a package purchase confirmed by the payment gateway.

    The payment key is the idempotency key: replaying a confirmation returns the
    original transaction without crediting again.

    Raises:
        HTTPException 400: Unknown package
        HTTPException 404: Account not initialized
    """
    try:
        transaction = await services.ledger.purchase_package(
            account_id, request.package_id, request.payment_key
        )
        balance = await services.ledger.get_balance(account_id)
    except GenLedgerError as e:
        raise to_http_exception(e)

    logger.info(
        "purchase.credited",
        account_id=account_id,
        package_id=request.package_id,
        transaction_id=str(transaction.id),
    )
    return TransactionResultResponse(
        transaction=TransactionDTO.from_transaction(transaction), balance=balance
    )


@router.get(
    "/{account_id}/transactions", response_model=TransactionsResponse, status_code=status.HTTP_200_OK
)
async def get_transactions(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
) -> TransactionsResponse:
    """Get transaction history, newest first."""
    try:
        transactions, total = await services.ledger.get_history(account_id, limit, offset)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return TransactionsResponse(
        transactions=[TransactionDTO.from_transaction(t) for t in transactions],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get(
    "/{account_id}/generations", response_model=GenerationsResponse, status_code=status.HTTP_200_OK
)
async def get_generations(
    account_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
) -> GenerationsResponse:
    """Get generation history, newest first."""
    jobs, total = await services.generation.list_jobs(account_id, limit, offset)
    return GenerationsResponse(
        jobs=[GenerationJobDTO.from_job(job) for job in jobs],
        total=total,
        offset=offset,
        limit=limit,
    )
