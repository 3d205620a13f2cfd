"""业务异常定义

所有业务异常都继承 AppError，携带稳定的错误码、提示信息和 HTTP 状态码。
cause 只用于日志记录，不会返回给调用方。
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    code = "PAY024"
    message = "Internal server error"
    status_code = 500

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.cause = cause
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self):
        if self.cause is not None:
            return f"[{self.code}] {self.message}: {self.cause}"
        return f"[{self.code}] {self.message}"


# 错误类别
class BadRequestError(AppError):
    status_code = 400


class BusinessError(AppError):
    status_code = 422


class AuthError(AppError):
    status_code = 401


class ForbiddenError(AuthError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class ExternalError(AppError):
    status_code = 502


class InternalError(AppError):
    code = "PAY024"
    message = "Internal server error"


# 订单
class OrderNotFound(NotFoundError):
    code, message = "ORD001", "Order not found"


class OrderCannotCancel(BusinessError):
    code, message = "ORD002", "Order cannot be cancelled"


class VersionMismatch(ConflictError):
    code, message = "ORD003", "Order was modified by another request, please reload"


class InsufficientStock(BusinessError):
    code, message = "ORD004", "Insufficient stock"

    def __init__(self, book_id=None, requested: int = None, available: int = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if book_id is not None:
            details["book_id"] = str(book_id)
        if requested is not None:
            details["requested"] = requested
        if available is not None:
            details["available"] = available
        message = kwargs.pop("message", None)
        if message is None and book_id is not None:
            message = f"Insufficient stock for book {book_id}"
        super().__init__(message, details=details, **kwargs)
        self.book_id = book_id


class PromoInactive(BusinessError):
    code, message = "ORD005", "Promotion is not active"


class PromoExpired(BusinessError):
    code, message = "ORD006", "Promotion has expired or not started yet"


class PromoUsageLimitReached(BusinessError):
    code, message = "ORD007", "Promotion usage limit reached"


class InvalidWarehouse(BusinessError):
    code, message = "ORD010", "No warehouse can fulfill this order"


class InvalidAddress(BadRequestError):
    code, message = "ORD011", "Invalid shipping address"


class CartEmpty(BusinessError):
    code, message = "ORD012", "Cart is empty"


class InvalidPaymentMethod(BadRequestError):
    code, message = "ORD013", "Invalid payment method"


class NotOwner(ForbiddenError):
    code, message = "ORD014", "You do not have access to this resource"


class InvalidStatus(BusinessError):
    code, message = "ORD015", "Invalid status transition"


class PromoMinAmount(BusinessError):
    code, message = "ORD016", "Order amount does not meet promotion minimum"


class InvalidRequest(BadRequestError):
    code, message = "ORD017", "Invalid request"


# 支付
class PaymentNotFound(NotFoundError):
    code, message = "PAY001", "Payment transaction not found"


class OrderAlreadyPaid(ConflictError):
    code, message = "PAY002", "Order has already been paid"


class RetryLimitExceeded(BusinessError):
    code, message = "PAY003", "Payment retry limit exceeded"


class OrderNotPending(BusinessError):
    code, message = "PAY004", "Order is not pending payment"


class InvalidGateway(BadRequestError):
    code, message = "PAY005", "Invalid payment gateway"


class RefundNotAllowed(BusinessError):
    code, message = "PAY006", "Refund is not allowed for this payment"


class PaymentNotSuccessful(BusinessError):
    code, message = "PAY007", "Payment was not successful"


class OrderCannotRefund(BusinessError):
    code, message = "PAY008", "Order status does not allow refund"


class RefundWindowExpired(BusinessError):
    code, message = "PAY009", "Refund window has expired"


class RefundAlreadyExists(ConflictError):
    code, message = "PAY010", "A refund request already exists for this payment"


class CODNoRefund(BusinessError):
    code, message = "PAY011", "COD orders cannot be refunded (no payment made)"


class InvalidSignature(BadRequestError):
    code, message = "PAY012", "Invalid webhook signature"


class WebhookAlreadyProcessed(ConflictError):
    code, message = "PAY013", "Webhook already processed"


class WebhookProcessingFailed(InternalError):
    code, message = "PAY014", "Webhook processing failed"


class GatewayTimeout(ExternalError):
    code, message, status_code = "PAY015", "Payment gateway timeout", 504


class GatewayUnavailable(ExternalError):
    code, message = "PAY016", "Payment gateway unavailable"


class InsufficientBalance(BusinessError):
    code, message = "PAY017", "Insufficient account balance"


class CardLocked(BusinessError):
    code, message = "PAY018", "Card is locked"


class OTPExpired(BusinessError):
    code, message = "PAY019", "OTP has expired"


class TransactionCancelled(BusinessError):
    code, message = "PAY020", "Transaction cancelled by user"


class Unauthorized(AuthError):
    code, message = "PAY021", "Unauthorized"


class OrderCancelled(BusinessError):
    code, message = "PAY022", "Order has been cancelled"


class RefundFailed(ExternalError):
    code, message = "PAY023", "Gateway refund failed"


class RefundNotFound(NotFoundError):
    code, message = "PAY025", "Refund request not found"
