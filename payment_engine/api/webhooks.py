"""
Provider confirmation webhook.

POST /webhooks/confirmations - Provider reports the outcome for a provider_ref.

The response is always {"received": true}: whether the reference matched
a payment awaiting confirmation is recorded in the audit trail, never
revealed to the sender.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from payment_engine.api.payments import get_engine
from payment_engine.engine.orchestrator import PaymentEngine
from payment_engine.errors import ValidationError
from payment_engine.providers.base import ConfirmationOutcome

logger = logging.getLogger("payment_engine.webhooks")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class ConfirmationIn(BaseModel):
    provider_ref: str
    status: str
    message: str = ""


class Received(BaseModel):
    received: bool = True


@router.post("/confirmations", response_model=Received)
async def receive_confirmation(body: ConfirmationIn, engine: PaymentEngine = Depends(get_engine)):
    try:
        outcome = ConfirmationOutcome.from_dict({"status": body.status, "message": body.message})
    except ValidationError as e:
        logger.warning("Discarding confirmation for %s: %s", body.provider_ref, e)
        return Received()

    await engine.report_confirmation(body.provider_ref, outcome)
    return Received()
