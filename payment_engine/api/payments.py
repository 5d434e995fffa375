"""
Payment endpoints.

POST /payments                - Request payment for an order (creates or reuses the open intent).
POST /payments/{id}/process   - Retry a failed attempt or confirm a pending one.
POST /payments/{id}/cancel    - Cancel an open payment.
GET  /payments                - List payments with filters (order, status).
GET  /payments/{id}           - Get a single payment.
GET  /payments/{id}/trace     - State transitions and audit trail for a payment.

Caller errors map to 422 (validation), 404 (not found) and 409 (conflict,
attempts exhausted). Provider failures are business outcomes: 200 with
the failed payment and an error object.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from payment_engine.engine.orchestrator import PaymentEngine, PaymentResult
from payment_engine.errors import Conflict, NotFound, PaymentError, RetriesExhausted, ValidationError
from payment_engine.models.enums import PaymentStatus
from payment_engine.models.payment import AuditLog, PaymentIntent, PaymentTransition
from payment_engine.providers.base import CardDetails, PaymentContext

router = APIRouter(prefix="/payments", tags=["payments"])


def get_engine(request: Request) -> PaymentEngine:
    return request.app.state.engine


class CardIn(BaseModel):
    number: str
    exp_month: int = Field(ge=1, le=12)
    exp_year: int
    cvc: str
    holder_name: str = ""


class PaymentRequest(BaseModel):
    order_id: str
    method: str
    country: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    card: Optional[CardIn] = None
    return_url: Optional[str] = None


class ProcessRequest(BaseModel):
    external_result: Optional[dict[str, Any]] = None
    card: Optional[CardIn] = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool


class PaymentDetail(BaseModel):
    id: str
    order_id: str
    method: str
    provider: str
    country: Optional[str]
    amount: float
    currency: str
    status: str
    provider_ref: Optional[str]
    action_url: Optional[str] = None
    attempts: int
    failure_reason: Optional[str]
    failure_message: Optional[str]
    notes: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]
    completed_at: Optional[str]

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    payment: Optional[PaymentDetail] = None
    error: Optional[ErrorDetail] = None


class TransitionEntry(BaseModel):
    from_status: str
    to_status: str
    reason: Optional[str]
    details: Optional[dict] = None
    created_at: Optional[str]


class AuditEntry(BaseModel):
    id: int
    action: str
    details: Optional[dict] = None
    timestamp: Optional[str]


class PaymentTraceResponse(BaseModel):
    payment: PaymentDetail
    transitions: list[TransitionEntry]
    audit_trail: list[AuditEntry]


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _json(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {"raw": raw}


def _intent_to_detail(p: PaymentIntent) -> PaymentDetail:
    return PaymentDetail(
        id=p.id,
        order_id=p.order_id,
        method=p.method,
        provider=p.provider,
        country=p.country,
        amount=p.amount,
        currency=p.currency,
        status=p.status,
        provider_ref=p.provider_ref,
        action_url=p.action_url,
        attempts=p.attempts or 0,
        failure_reason=p.failure_reason,
        failure_message=p.failure_message,
        notes=p.notes,
        created_at=_iso(p.created_at),
        updated_at=_iso(p.updated_at),
        completed_at=_iso(p.completed_at),
    )


def _status_code(error: PaymentError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, (Conflict, RetriesExhausted)):
        return 409
    return 200


def _respond(result: PaymentResult) -> JSONResponse:
    body = PaymentResponse(
        payment=_intent_to_detail(result.intent) if result.intent is not None else None,
        error=ErrorDetail(
            code=result.error.code,
            message=result.error.message,
            retryable=result.retryable,
        ) if result.error is not None else None,
    )
    status_code = _status_code(result.error) if result.error is not None else 200
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _card(card: Optional[CardIn]) -> Optional[CardDetails]:
    if card is None:
        return None
    return CardDetails(
        number=card.number,
        exp_month=card.exp_month,
        exp_year=card.exp_year,
        cvc=card.cvc,
        holder_name=card.holder_name,
    )


@router.post("", response_model=PaymentResponse)
async def request_payment(req: PaymentRequest, engine: PaymentEngine = Depends(get_engine)):
    """
    Request payment for an order.

    The provider is chosen from the method and the payer's country. Cash
    and direct card settle in this call; embedded and redirect checkouts
    come back as requires_action with the provider reference to act on.
    """
    context = PaymentContext(
        country=req.country,
        amount=req.amount,
        currency=req.currency,
        card=_card(req.card),
        return_url=req.return_url,
    )
    result = await engine.request_payment(req.order_id, req.method, context)
    return _respond(result)


@router.post("/{payment_id}/process", response_model=PaymentResponse)
async def process_payment(
    payment_id: str,
    req: Optional[ProcessRequest] = None,
    engine: PaymentEngine = Depends(get_engine),
):
    """Start another attempt, or confirm a payment that requires action."""
    req = req or ProcessRequest()
    context = None
    if req.card is not None:
        context = PaymentContext(card=_card(req.card))
    result = await engine.process_payment(payment_id, external_result=req.external_result, context=context)
    return _respond(result)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(payment_id: str, engine: PaymentEngine = Depends(get_engine)):
    result = await engine.cancel_payment(payment_id)
    return _respond(result)


@router.get("", response_model=list[PaymentDetail])
async def list_payments(
    order_id: Optional[str] = Query(None, description="Filter by order"),
    status: Optional[PaymentStatus] = Query(None, description="Filter by status"),
    engine: PaymentEngine = Depends(get_engine),
):
    """List payments, newest first."""
    intents = await engine.list_payments(order_id=order_id, status=status)
    return [_intent_to_detail(p) for p in intents]


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: str, engine: PaymentEngine = Depends(get_engine)):
    result = await engine.get_payment(payment_id)
    return _respond(result)


@router.get("/{payment_id}/trace", response_model=PaymentTraceResponse)
async def get_payment_trace(payment_id: str, engine: PaymentEngine = Depends(get_engine)):
    """
    Full history of a payment.

    Returns the payment plus every state transition and audit log entry,
    in order. Useful for debugging provider failures and understanding
    the routing decision made for the payer.
    """
    try:
        trace = await engine.get_trace(payment_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=e.message)

    return PaymentTraceResponse(
        payment=_intent_to_detail(trace.intent),
        transitions=[_transition_entry(t) for t in trace.transitions],
        audit_trail=[_audit_entry(log) for log in trace.audit],
    )


def _transition_entry(t: PaymentTransition) -> TransitionEntry:
    return TransitionEntry(
        from_status=t.from_status,
        to_status=t.to_status,
        reason=t.reason,
        details=_json(t.details),
        created_at=_iso(t.created_at),
    )


def _audit_entry(log: AuditLog) -> AuditEntry:
    return AuditEntry(
        id=log.id,
        action=log.action,
        details=_json(log.details),
        timestamp=_iso(log.timestamp),
    )
