from fastapi import APIRouter, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from typing import Any, Dict
import logging

from bookstore.services.container import ServiceContainer, get_container
from bookstore.utils.errors import AppError, InvalidSignature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _read_body(request: Request) -> Dict[str, Any]:
    """网关回调可能是 JSON、表单或查询参数"""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        data = await request.json()
        return dict(data) if isinstance(data, dict) else {}
    if "form" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items()}
    return dict(request.query_params)


async def _handle(gateway: str, request: Request, container: ServiceContainer):
    port = container.gateways.get(gateway)
    if port is None:
        raise HTTPException(status_code=404, detail=f"Unknown gateway {gateway}")

    body = await _read_body(request)
    headers = {k: v for k, v in request.headers.items() if k.lower() not in ("authorization", "cookie")}
    try:
        result = await container.payment_service.process_webhook(gateway, body, headers)
    except InvalidSignature:
        logger.warning(f"Rejected webhook with invalid signature | gateway：{gateway}")
        return JSONResponse(status_code=400, content=port.acknowledge(False))
    except AppError as e:
        # 业务错误已记录在回调日志中，由重试任务处理
        logger.error(f"Webhook not applied | gateway：{gateway} | error：{str(e)}")
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception as e:
        logger.error(f"Webhook handling error | gateway：{gateway} | error：{str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if result.get("status") == "duplicate":
        logger.info(f"Webhook already processed | gateway：{gateway}")
    return JSONResponse(status_code=200, content=port.acknowledge(True))


@router.post("/{gateway}")
async def webhook_received(gateway: str, request: Request, container: ServiceContainer = Depends(get_container)):
    return await _handle(gateway, request, container)


@router.get("/vnpay")
async def vnpay_ipn(request: Request, container: ServiceContainer = Depends(get_container)):
    """VNPay IPN 使用 GET 查询参数回调"""
    return await _handle("vnpay", request, container)
