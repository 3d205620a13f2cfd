from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Optional
from uuid import UUID
import logging

from bookstore.models.order import OrderStatus
from bookstore.schemas.order_schemas import (
    CreateOrderRequest, CreateOrderResponse, CancelOrderRequest, CancelOrderResponse,
    ReorderRequest, OrderDetailResponse, OrderListResponse,
)
from bookstore.services.auth import current_user_id
from bookstore.services.container import ServiceContainer, get_container
from bookstore.utils.errors import AppError

# 配置日志
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("", response_model=CreateOrderResponse, status_code=201)
async def create_order_endpoint(
    request: CreateOrderRequest,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """从购物车创建订单"""
    try:
        return await container.order_service.create_order(user_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error creating order | user：{user_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create order")


@router.get("", response_model=OrderListResponse)
async def list_orders_endpoint(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.order_service.list_orders(user_id, status, page, limit)


@router.post("/reorder", response_model=CreateOrderResponse, status_code=201)
async def reorder_endpoint(
    request: ReorderRequest,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """按历史订单重新下单"""
    try:
        return await container.order_service.reorder(user_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error reordering | user：{user_id} | order：{request.order_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to reorder")


@router.get("/number/{order_number}", response_model=OrderDetailResponse)
async def get_order_by_number_endpoint(
    order_number: str,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.order_service.get_order_by_number(user_id, order_number)


@router.get("/{order_id}", response_model=OrderDetailResponse)
async def get_order_endpoint(
    order_id: UUID,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.order_service.get_order_detail(user_id, order_id)


@router.patch("/{order_id}/cancel", response_model=CancelOrderResponse)
async def cancel_order_endpoint(
    order_id: UUID,
    request: CancelOrderRequest,
    user_id: UUID = Depends(current_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """用户取消订单（需携带当前版本号）"""
    try:
        return await container.order_service.cancel_order(user_id, order_id, request)
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Error cancelling order | user：{user_id} | order：{order_id} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to cancel order")
