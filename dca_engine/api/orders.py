"""
Recurring Order API Endpoints

REST API for creating, inspecting, pausing, re-authorizing and cancelling
recurring orders.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..core.orders.errors import OrderNotFoundError
from ..core.orders.models import (
    Credential,
    CredentialScope,
    Execution,
    Frequency,
    Order,
    OrderStatus,
    TokenInfo,
)
from ..core.orders.service import OrderService
from .dependencies import get_order_service

router = APIRouter(prefix="/dca", tags=["DCA Orders"])


# =============================================================================
# Request/Response Models
# =============================================================================


class TokenInfoRequest(BaseModel):
    """Token information for an order."""
    symbol: str = Field(..., description="Token symbol (e.g., USDC)")
    address: str = Field(..., description="Token contract address")
    chain_id: int = Field(..., alias="chainId", description="Chain ID")
    decimals: int = Field(..., ge=0, le=36, description="Token decimals")

    class Config:
        populate_by_name = True


class CredentialScopeRequest(BaseModel):
    """What the delegated credential may call."""
    allowed_targets: List[str] = Field(default_factory=list, alias="allowedTargets")
    allowed_selectors: List[str] = Field(default_factory=list, alias="allowedSelectors")
    value_ceiling: Optional[int] = Field(None, alias="valueCeiling", ge=0, description="Max native value per call, wei")

    class Config:
        populate_by_name = True


class CredentialRequest(BaseModel):
    """Delegated signing credential descriptor."""
    key_id: str = Field(..., alias="keyId", description="Credential key identifier at the signer")
    bound_account_address: str = Field(..., alias="boundAccountAddress")
    scope: CredentialScopeRequest = Field(default_factory=CredentialScopeRequest)
    valid_after: datetime = Field(..., alias="validAfter")
    valid_until: datetime = Field(..., alias="validUntil")

    class Config:
        populate_by_name = True


class CreateOrderRequest(BaseModel):
    """Request to create a recurring order."""
    owner_address: str = Field(..., alias="ownerAddress")
    funding_account_address: str = Field(..., alias="fundingAccountAddress")
    source_asset: TokenInfoRequest = Field(..., alias="sourceAsset")
    target_asset: TokenInfoRequest = Field(..., alias="targetAsset")
    total_amount: Decimal = Field(..., alias="totalAmount", gt=0, description="Total budget in source units")
    frequency: Optional[Frequency] = Field(None, description="hourly, daily, weekly or monthly")
    interval_seconds: Optional[int] = Field(None, alias="intervalSeconds", gt=0)
    total_executions: Optional[int] = Field(None, alias="totalExecutions", ge=1)
    duration_days: Optional[int] = Field(None, alias="durationDays", ge=1)
    destination_address: Optional[str] = Field(None, alias="destinationAddress")
    credential: CredentialRequest
    platform_fee_percentage: Optional[Decimal] = Field(None, alias="platformFeePercentage", ge=0, lt=100)
    external_order_hash: Optional[str] = Field(None, alias="externalOrderHash")

    class Config:
        populate_by_name = True


class OwnerActionRequest(BaseModel):
    """Request body for owner-scoped actions."""
    owner_address: str = Field(..., alias="ownerAddress")

    class Config:
        populate_by_name = True


class CancelOrderRequest(OwnerActionRequest):
    """Request to cancel an order."""
    sweep_remaining_funds: bool = Field(False, alias="sweepRemainingFunds")


class UpdateCredentialRequest(OwnerActionRequest):
    """Owner re-authorization with a fresh credential."""
    credential: CredentialRequest


class OrderResponse(BaseModel):
    """Recurring order response."""
    id: str
    owner_address: str = Field(..., alias="ownerAddress")
    funding_account_address: str = Field(..., alias="fundingAccountAddress")
    destination_address: str = Field(..., alias="destinationAddress")
    source_asset: dict = Field(..., alias="sourceAsset")
    target_asset: dict = Field(..., alias="targetAsset")
    status: OrderStatus
    total_amount: str = Field(..., alias="totalAmount")
    executed_amount: str = Field(..., alias="executedAmount")
    remaining_amount: str = Field(..., alias="remainingAmount")
    per_execution_amount: str = Field(..., alias="perExecutionAmount")
    total_executions: int = Field(..., alias="totalExecutions")
    executions_completed: int = Field(..., alias="executionsCompleted")
    interval_seconds: int = Field(..., alias="intervalSeconds")
    frequency: Optional[Frequency] = None
    next_execution_at: datetime = Field(..., alias="nextExecutionAt")
    expires_at: datetime = Field(..., alias="expiresAt")
    last_executed_at: Optional[datetime] = Field(None, alias="lastExecutedAt")
    platform_fee_percentage: str = Field(..., alias="platformFeePercentage")
    net_investment_amount: Optional[str] = Field(None, alias="netInvestmentAmount")
    credential_key_id: Optional[str] = Field(None, alias="credentialKeyId")
    credential_valid_until: Optional[datetime] = Field(None, alias="credentialValidUntil")
    last_error: Optional[str] = Field(None, alias="lastError")
    last_error_code: Optional[str] = Field(None, alias="lastErrorCode")
    pending_tx_reference: Optional[str] = Field(None, alias="pendingTxReference", description="Unconfirmed batch awaiting settlement")
    external_order_hash: Optional[str] = Field(None, alias="externalOrderHash")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    class Config:
        populate_by_name = True


class ExecutionResponse(BaseModel):
    """One execution cycle."""
    id: str
    order_id: str = Field(..., alias="orderId")
    status: str
    executed_at: datetime = Field(..., alias="executedAt")
    amount_in: str = Field(..., alias="amountIn")
    amount_out: str = Field(..., alias="amountOut")
    tx_hash: Optional[str] = Field(None, alias="txHash")
    gas_used: Optional[int] = Field(None, alias="gasUsed")
    gas_price: Optional[int] = Field(None, alias="gasPrice")
    quote_source: Optional[str] = Field(None, alias="quoteSource")
    error_code: Optional[str] = Field(None, alias="errorCode")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    class Config:
        populate_by_name = True


class CancelOrderResponse(BaseModel):
    """Cancellation outcome."""
    success: bool
    order: OrderResponse
    funds_swept: bool = Field(..., alias="fundsSwept")
    sweep_tx_hash: Optional[str] = Field(None, alias="sweepTxHash")
    sweep_amount: Optional[str] = Field(None, alias="sweepAmount")
    sweep_error: Optional[str] = Field(None, alias="sweepError")

    class Config:
        populate_by_name = True


# =============================================================================
# Helper Functions
# =============================================================================


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _token_from_request(token: TokenInfoRequest) -> TokenInfo:
    return TokenInfo(symbol=token.symbol, address=token.address, chain_id=token.chain_id, decimals=token.decimals)


def _credential_from_request(request: CredentialRequest) -> Credential:
    return Credential(
        key_id=request.key_id,
        bound_account_address=request.bound_account_address,
        scope=CredentialScope(
            allowed_targets=list(request.scope.allowed_targets),
            allowed_selectors=list(request.scope.allowed_selectors),
            value_ceiling=request.scope.value_ceiling,
        ),
        valid_after=_aware(request.valid_after),
        valid_until=_aware(request.valid_until),
    )


def _order_to_response(order: Order) -> OrderResponse:
    """Convert Order to response model."""
    return OrderResponse(
        id=order.id,
        ownerAddress=order.owner_address,
        fundingAccountAddress=order.funding_account_address,
        destinationAddress=order.destination_address,
        sourceAsset=order.source_asset.to_dict(),
        targetAsset=order.target_asset.to_dict(),
        status=order.status,
        totalAmount=str(order.total_amount),
        executedAmount=str(order.executed_amount),
        remainingAmount=str(order.remaining_amount),
        perExecutionAmount=str(order.per_execution_amount),
        totalExecutions=order.total_executions,
        executionsCompleted=order.executions_completed,
        intervalSeconds=order.interval_seconds,
        frequency=order.frequency,
        nextExecutionAt=order.next_execution_at,
        expiresAt=order.expires_at,
        lastExecutedAt=order.last_executed_at,
        platformFeePercentage=str(order.platform_fee_percentage),
        netInvestmentAmount=str(order.net_investment_amount) if order.net_investment_amount is not None else None,
        credentialKeyId=order.credential.key_id if order.credential else None,
        credentialValidUntil=order.credential.valid_until if order.credential else None,
        lastError=order.last_error,
        lastErrorCode=order.last_error_code,
        pendingTxReference=order.pending_submission.tx_reference if order.pending_submission else None,
        externalOrderHash=order.external_order_hash,
        createdAt=order.created_at,
        updatedAt=order.updated_at,
    )


def _execution_to_response(execution: Execution) -> ExecutionResponse:
    """Convert Execution to response model."""
    return ExecutionResponse(
        id=execution.id,
        orderId=execution.order_id,
        status=execution.status.value,
        executedAt=execution.executed_at,
        amountIn=str(execution.amount_in),
        amountOut=str(execution.amount_out),
        txHash=execution.tx_reference,
        gasUsed=execution.gas_used,
        gasPrice=execution.gas_price,
        quoteSource=execution.quote_source,
        errorCode=execution.error_code,
        errorMessage=execution.error_message,
    )


def _raise_http(exc: Exception) -> NoReturn:
    """Map service-layer exceptions onto HTTP status codes."""
    if isinstance(exc, OrderNotFoundError):
        raise HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, PermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc))
    raise HTTPException(status_code=500, detail=str(exc))


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """Create a new recurring order (active, first cycle shortly after creation)."""
    try:
        order = await service.create_order(
            owner_address=request.owner_address,
            funding_account_address=request.funding_account_address,
            source_asset=_token_from_request(request.source_asset),
            target_asset=_token_from_request(request.target_asset),
            total_amount=request.total_amount,
            credential=_credential_from_request(request.credential),
            destination_address=request.destination_address,
            frequency=request.frequency,
            interval_seconds=request.interval_seconds,
            total_executions=request.total_executions,
            duration_days=request.duration_days,
            platform_fee_percentage=request.platform_fee_percentage,
            external_order_hash=request.external_order_hash,
        )
        return _order_to_response(order)
    except Exception as e:
        _raise_http(e)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    service: OrderService = Depends(get_order_service),
):
    """Get an order by ID."""
    try:
        return _order_to_response(await service.get_order(order_id))
    except Exception as e:
        _raise_http(e)


@router.get("/orders/{order_id}/executions", response_model=List[ExecutionResponse])
async def list_order_executions(
    order_id: str,
    service: OrderService = Depends(get_order_service),
):
    """Execution log for an order, newest first."""
    try:
        executions = await service.list_executions(order_id)
        return [_execution_to_response(e) for e in executions]
    except Exception as e:
        _raise_http(e)


@router.get("/users/{owner_address}/orders", response_model=List[OrderResponse])
async def list_user_orders(
    owner_address: str,
    status: Optional[OrderStatus] = None,
    service: OrderService = Depends(get_order_service),
):
    """List all orders owned by an address."""
    orders = await service.list_user_orders(owner_address, status=status)
    return [_order_to_response(o) for o in orders]


@router.post("/orders/{order_id}/pause", response_model=OrderResponse)
async def pause_order(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
):
    """Hold an order out of scheduling."""
    try:
        return _order_to_response(await service.pause_order(order_id, request.owner_address))
    except Exception as e:
        _raise_http(e)


@router.post("/orders/{order_id}/resume", response_model=OrderResponse)
async def resume_order(
    order_id: str,
    request: OwnerActionRequest,
    service: OrderService = Depends(get_order_service),
):
    """Resume a paused, held or insufficient-balance order."""
    try:
        return _order_to_response(await service.resume_order(order_id, request.owner_address))
    except Exception as e:
        _raise_http(e)


@router.put("/orders/{order_id}/credential", response_model=OrderResponse)
async def update_order_credential(
    order_id: str,
    request: UpdateCredentialRequest,
    service: OrderService = Depends(get_order_service),
):
    """Replace the delegated credential (owner re-authorization)."""
    try:
        order = await service.update_credential(
            order_id,
            request.owner_address,
            _credential_from_request(request.credential),
        )
        return _order_to_response(order)
    except Exception as e:
        _raise_http(e)


@router.post("/orders/{order_id}/cancel", response_model=CancelOrderResponse)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """Cancel an order, optionally sweeping unspent funds back to the owner."""
    try:
        result = await service.cancel_order(
            order_id,
            request.owner_address,
            sweep_remaining_funds=request.sweep_remaining_funds,
        )
    except Exception as e:
        _raise_http(e)

    body: Dict[str, Any] = {
        "success": True,
        "order": _order_to_response(result.order),
        "fundsSwept": result.funds_swept,
        "sweepTxHash": result.sweep_tx_hash,
        "sweepAmount": str(result.sweep_amount) if result.sweep_amount is not None else None,
        "sweepError": result.sweep_error,
    }
    return CancelOrderResponse(**body)
