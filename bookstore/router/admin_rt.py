from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
from uuid import UUID
import logging

from bookstore.models.order import OrderStatus
from bookstore.models.payment import PaymentGateway, PaymentStatus
from bookstore.schemas.order_schemas import OrderDetailResponse, OrderListResponse, UpdateOrderStatusRequest
from bookstore.schemas.payment_schemas import (
    AdminPaymentDetailResponse, PaymentListResponse, ReconcileRequest,
    ApproveRefundRequest, RejectRefundRequest, RefundResponse, RefundListResponse,
)
from bookstore.services.auth import current_admin_id
from bookstore.services.container import ServiceContainer, get_container
from bookstore.utils.errors import AppError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# 订单
@router.get("/orders", response_model=OrderListResponse)
async def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.order_service.admin_list_orders(status, page, limit)


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def admin_get_order(
    order_id: UUID,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.order_service.admin_get_order(order_id)


@router.patch("/orders/{order_id}/status", response_model=OrderDetailResponse)
async def admin_update_order_status(
    order_id: UUID,
    request: UpdateOrderStatusRequest,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        return await container.order_service.update_order_status(admin_id, order_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error updating order status | order：{order_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update order status")


# 支付
@router.get("/payments", response_model=PaymentListResponse)
async def admin_list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[PaymentStatus] = None,
    gateway: Optional[PaymentGateway] = None,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.payment_service.admin_list_payments(status, gateway, page, limit)


@router.get("/payments/{payment_id}", response_model=AdminPaymentDetailResponse)
async def admin_get_payment(
    payment_id: UUID,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.payment_service.admin_get_payment(payment_id)


@router.patch("/payments/{payment_id}/reconcile", response_model=AdminPaymentDetailResponse)
async def admin_reconcile_payment(
    payment_id: UUID,
    request: ReconcileRequest,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    """人工对账"""
    try:
        return await container.payment_service.admin_reconcile(admin_id, payment_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error reconciling payment | payment：{payment_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to reconcile payment")


# 退款
@router.get("/refunds/pending", response_model=RefundListResponse)
async def admin_list_pending_refunds(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.refund_service.list_pending_refunds(page, limit)


@router.post("/refunds/{refund_id}/approve", response_model=RefundResponse)
async def admin_approve_refund(
    refund_id: UUID,
    request: ApproveRefundRequest,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    try:
        return await container.refund_service.approve(admin_id, refund_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error approving refund | refund：{refund_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to approve refund")


@router.post("/refunds/{refund_id}/reject", response_model=RefundResponse)
async def admin_reject_refund(
    refund_id: UUID,
    request: RejectRefundRequest,
    admin_id: UUID = Depends(current_admin_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.refund_service.reject(admin_id, refund_id, request)
