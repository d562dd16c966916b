from functools import lru_cache

from fastapi import APIRouter, Depends, Request

from learnpay.auth import verify_token
from learnpay.config import settings
from learnpay.schemas import CreatePaymentRequest, PaymentOut, RefundRequest
from learnpay.service import build_payment_service

router = APIRouter()


@lru_cache
def get_payment_service():
    return build_payment_service(settings)


@router.post("/payments")
async def create_payment_api(
    request: CreatePaymentRequest,
    auth=Depends(verify_token),
    service=Depends(get_payment_service),
):
    return await service.create_payment_intent(request.to_domain(user_id=auth.get("sub")))


@router.get("/payments/{payment_id}")
def get_payment_api(payment_id: str, auth=Depends(verify_token), service=Depends(get_payment_service)):
    return PaymentOut.from_intent(service.get_payment(payment_id))


@router.post("/payments/{payment_id}/capture")
async def capture_payment_api(payment_id: str, auth=Depends(verify_token), service=Depends(get_payment_service)):
    intent = await service.capture_order(payment_id, performed_by=auth.get("sub"))
    return PaymentOut.from_intent(intent)


@router.post("/payments/{payment_id}/refunds")
async def refund_payment_api(
    payment_id: str,
    request: RefundRequest,
    auth=Depends(verify_token),
    service=Depends(get_payment_service),
):
    intent = await service.issue_refund(
        payment_id, amount=request.amount, reason=request.reason, requested_by=auth.get("sub")
    )
    return PaymentOut.from_intent(intent)


@router.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request, service=Depends(get_payment_service)):
    payload = await request.body()
    signature = service.gateway_for(provider).signature_from_headers(request.headers)
    return await service.handle_webhook(provider, payload, signature)
