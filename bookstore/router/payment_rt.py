from fastapi import APIRouter, HTTPException, Request, Depends, Query
from uuid import UUID
import logging

from bookstore.schemas.payment_schemas import (
    CreatePaymentRequest, CreatePaymentResponse, PaymentResponse, PaymentListResponse,
    RefundRequestBody, RefundResponse,
)
from bookstore.services.auth import current_user_id
from bookstore.services.container import ServiceContainer, get_container
from bookstore.utils.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payments"])


@router.post("/payments", response_model=CreatePaymentResponse, status_code=201)
async def create_payment_endpoint(
    body: CreatePaymentRequest,
    request: Request,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """发起支付，跳转类网关返回 payment_url"""
    client_ip = request.client.host if request.client else None
    try:
        return await container.payment_service.create_payment(user_id, body, client_ip=client_ip)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating payment | user：{user_id} | order：{body.order_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create payment")


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments_endpoint(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.payment_service.list_user_payments(user_id, page, limit)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
async def get_payment_endpoint(
    payment_id: UUID,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.payment_service.get_payment_status(user_id, payment_id)


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse, status_code=201)
async def request_refund_endpoint(
    payment_id: UUID,
    body: RefundRequestBody,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        return await container.refund_service.request_refund(user_id, payment_id, body)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error requesting refund | user：{user_id} | payment：{payment_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to request refund")


@router.get("/refunds/{refund_id}", response_model=RefundResponse)
async def get_refund_endpoint(
    refund_id: UUID,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.refund_service.get_refund_status(user_id, refund_id)
