"""
Payments API routes.

Thin layer over PaymentService: parse the request, call the use-case,
wrap the result in the standard response envelope. The M-Pesa callback
endpoint is the exception: it always answers with the plain Daraja ack.
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_mpesa_settings, get_payment_service
from api.middleware import resolve_client_ip
from application.dtos.payments import InitiatePaymentRequest, PhoneValidationRequest
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from core.response import success_response
from core.settings import MpesaSettings


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/mpesa/stk-push", summary="Initiate STK push")
async def initiate_stk_push(
    payload: InitiatePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    view = await service.initiate(payload.amount, payload.phone, payload.reference, payload.description)
    message = "STK push sent" if view.accepted else "STK push rejected by gateway"
    return success_response(data=view.model_dump(mode="json"), message=message)


@router.post("/mpesa/callback", summary="M-Pesa STK callback", response_model=None)
async def mpesa_callback(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    settings: MpesaSettings = Depends(get_mpesa_settings),
):
    client_ip = getattr(request.state, "client_ip", None) or resolve_client_ip(request)
    if not settings.webhook.is_allowed(client_ip):
        logger.warning("callback_source_rejected", client_ip=client_ip)
        return JSONResponse(content=CALLBACK_ACK)

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = {"raw": raw_body.decode("utf-8", errors="replace")}

    await service.handle_notification(payload)
    # Daraja retries anything that is not a 200 ack
    return JSONResponse(content=CALLBACK_ACK)


@router.post("/mpesa/verify", summary="Reconcile pending transactions now")
async def verify_pending(service: PaymentService = Depends(get_payment_service)):
    reconciled = await service.verify_pending()
    return success_response(data={"reconciled": reconciled}, message="Verification sweep finished")


@router.get("/mpesa/configuration", summary="M-Pesa configuration status")
async def configuration_status(service: PaymentService = Depends(get_payment_service)):
    status = service.configuration_status()
    message = "M-Pesa is configured" if status.is_configured else "M-Pesa configuration incomplete"
    return success_response(data=status.model_dump(mode="json"), message=message)


@router.get("/mpesa/test-connection", summary="Check Daraja credentials and connectivity")
async def test_connection(service: PaymentService = Depends(get_payment_service)):
    result = await service.test_connection()
    return success_response(data=result.model_dump(mode="json"), message="M-Pesa connection test successful")


@router.post("/mpesa/validate-phone", summary="Preview phone normalization")
async def validate_phone(
    payload: PhoneValidationRequest,
    service: PaymentService = Depends(get_payment_service),
):
    result = service.validate_phone(payload.phone)
    return success_response(data=result.model_dump(mode="json"))


@router.get("/mpesa/result-codes", summary="Known M-Pesa result codes")
async def result_codes():
    codes = PaymentService.result_codes()
    return success_response(data=[c.model_dump(mode="json") for c in codes])


@router.get("/mpesa/callbacks/unprocessed", summary="Orphaned or unprocessed callbacks")
async def unprocessed_callbacks(
    limit: int = Query(default=100, ge=1, le=500),
    service: PaymentService = Depends(get_payment_service),
):
    records = await service.list_unprocessed_callbacks(limit)
    return success_response(data=[r.model_dump(mode="json") for r in records])


@router.post("/mpesa/callbacks/reprocess", summary="Replay unprocessed callbacks")
async def reprocess_callbacks(service: PaymentService = Depends(get_payment_service)):
    processed = await service.reprocess_callbacks()
    return success_response(data={"processed": processed}, message="Callback replay finished")


@router.post("/{payment_id}/retry", summary="Retry a failed payment")
async def retry_payment(payment_id: int, service: PaymentService = Depends(get_payment_service)):
    view = await service.retry(payment_id)
    message = "STK push sent" if view.accepted else "STK push rejected by gateway"
    return success_response(data=view.model_dump(mode="json"), message=message)


@router.get("/{payment_id}", summary="Payment with its attempts")
async def get_payment(payment_id: int, service: PaymentService = Depends(get_payment_service)):
    view = await service.get_payment(payment_id)
    return success_response(data=view.model_dump(mode="json"))
