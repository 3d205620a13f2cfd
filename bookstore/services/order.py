"""订单服务（下单编排、取消、状态流转、再次购买）

事务内完成：库存预留 / 释放、订单与明细写入、状态历史。
事务提交后才投递后台任务（库存同步、超时自动释放），投递失败只记日志。
"""
from decimal import Decimal
from math import ceil
from typing import Iterable, List, Optional, Tuple
import logging

from bookstore.jobs.dispatcher import (
    JobDispatcher, TASK_AUTO_RELEASE_RESERVATION, TASK_STOCK_RESYNC,
    QUEUE_ORDERS, QUEUE_INVENTORY, SOURCE_SALE, SOURCE_ORDER_CANCELLED,
)
from bookstore.models.catalog import Address, Book, Cart
from bookstore.models.order import (
    Order, OrderItem, OrderStatus, OrderPaymentStatus, PaymentMethod, can_transition,
)
from bookstore.repository.catalog_repo import CatalogRepository
from bookstore.repository.inventory_repo import InventoryRepository
from bookstore.repository.order_repo import OrderRepository
from bookstore.schemas.order_schemas import (
    CreateOrderRequest, CancelOrderRequest, ReorderRequest, UpdateOrderStatusRequest, OrderLine,
    CreateOrderResponse, CancelOrderResponse, OrderDetailResponse, OrderSummaryResponse,
    OrderListResponse, AddressSummary,
)
from bookstore.services.promotion import PromotionEvaluator
from bookstore.services.warehouse import WarehouseSelector
from bookstore.utils.clock import utcnow
from bookstore.utils.database import UnitOfWork
from bookstore.utils.errors import (
    CartEmpty, InvalidAddress, InvalidPaymentMethod, InvalidRequest, InvalidStatus, NotOwner,
    OrderCannotCancel, OrderNotFound, PromoInactive, VersionMismatch,
)
from bookstore.utils.money import compute_amounts, quantize_persist
from bookstore.utils.settings import Settings

logger = logging.getLogger(__name__)

AUTO_RELEASE_REASON = "Payment timeout - auto-cancelled"
MAX_PAGE_SIZE = 100


class OrderService:
    def __init__(
        self,
        session_factory,
        settings: Settings,
        dispatcher: JobDispatcher,
        clock=utcnow,
        warehouse_selector: WarehouseSelector = None,
        promotion_evaluator: PromotionEvaluator = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.dispatcher = dispatcher
        self.clock = clock
        self.warehouse_selector = warehouse_selector or WarehouseSelector(settings)
        self.promotion_evaluator = promotion_evaluator or PromotionEvaluator(clock)

    # 下单
    async def create_order(self, user_id, req: CreateOrderRequest) -> CreateOrderResponse:
        """从购物车创建订单"""
        logger.info(f"Creating order from cart | user：{user_id} | method：{req.payment_method}")
        payment_method = self._validate_payment_method(req.payment_method)

        with UnitOfWork(self.session_factory) as uow:
            catalog = CatalogRepository(uow.session)
            cart = catalog.get_cart(user_id)
            if not cart or not cart.items:
                raise CartEmpty()

            if req.promo_code and (req.promo_code or "").strip().upper() != (cart.promo_code or "").strip().upper():
                logger.warning(f"Client promo code ignored, cart promotion is authoritative | user：{user_id} | code：{req.promo_code}")

            lines = [(item.book_id, item.quantity) for item in cart.items]
            order = self._place_order(
                uow, user_id, lines, req.address_id, payment_method,
                promo_code=cart.promo_code, customer_note=req.customer_note, cart=cart,
            )
            response = self._created_response(order)

        logger.info(f"Order created | user：{user_id} | order：{response.order_number} | total：{response.total}")
        return response

    async def create_order_from_items(
        self,
        user_id,
        lines: Iterable[OrderLine],
        address_id,
        payment_method,
        customer_note: Optional[str] = None,
    ) -> CreateOrderResponse:
        """不经过购物车的下单（再次购买等场景），不使用促销"""
        payment_method = self._validate_payment_method(payment_method)
        merged = {}
        for line in lines:
            merged[line.book_id] = merged.get(line.book_id, 0) + line.quantity
        if not merged:
            raise InvalidRequest("Order must contain at least one item")

        with UnitOfWork(self.session_factory) as uow:
            order = self._place_order(
                uow, user_id, list(merged.items()), address_id, payment_method,
                promo_code=None, customer_note=customer_note, cart=None,
            )
            response = self._created_response(order)

        logger.info(f"Order created from items | user：{user_id} | order：{response.order_number} | total：{response.total}")
        return response

    def _place_order(
        self,
        uow: UnitOfWork,
        user_id,
        lines: List[Tuple[object, int]],
        address_id,
        payment_method: PaymentMethod,
        promo_code: Optional[str],
        customer_note: Optional[str],
        cart: Optional[Cart],
    ) -> Order:
        db = uow.session
        catalog = CatalogRepository(db)
        orders = OrderRepository(db, self.clock)
        inventory = InventoryRepository(db)

        address = self._resolve_address(catalog, user_id, address_id)
        books = catalog.get_books(book_id for book_id, _ in lines)
        priced: List[Tuple[Book, int]] = []
        for book_id, quantity in lines:
            book = books.get(book_id)
            if not book or not book.is_active:
                raise InvalidRequest(f"Book {book_id} is not available", details={"book_id": str(book_id)})
            if quantity < 1:
                raise InvalidRequest("Quantity must be at least 1", details={"book_id": str(book_id)})
            priced.append((book, quantity))

        subtotal = sum((quantize_persist(book.price) * qty for book, qty in priced), Decimal("0"))

        promotion = None
        discount = Decimal("0")
        if promo_code:
            promotion = catalog.get_promotion_by_code(promo_code, for_update=True)
            if not promotion:
                raise PromoInactive("Promotion not found")
            discount = self.promotion_evaluator.validate(promotion, subtotal)

        is_cod = payment_method == PaymentMethod.COD
        amounts = compute_amounts(
            subtotal, discount, is_cod,
            shipping_fee=self.settings.shipping_fee,
            cod_fee=self.settings.cod_fee,
            tax_rate=self.settings.tax_rate,
        )

        warehouse = self.warehouse_selector.select(db, address, [(book.id, qty) for book, qty in priced])

        # 逐行预留库存，任何一行失败整个事务回滚
        for book, quantity in priced:
            inventory.reserve(warehouse.id, book.id, quantity, actor=user_id, reason="order_reserve")

        initial_status = OrderStatus.CONFIRMED if is_cod else OrderStatus.PENDING
        order = orders.insert(Order(
            user_id=user_id,
            address_id=address.id,
            promotion_id=promotion.id if promotion else None,
            warehouse_id=warehouse.id,
            subtotal=amounts.subtotal,
            shipping_fee=amounts.shipping_fee,
            cod_fee=amounts.cod_fee,
            discount_amount=amounts.discount,
            tax_amount=amounts.tax,
            total=amounts.total,
            payment_method=payment_method,
            payment_status=OrderPaymentStatus.PENDING,
            status=initial_status,
            customer_note=customer_note,
        ))
        orders.insert_items(
            OrderItem(
                order_id=order.id,
                book_id=book.id,
                warehouse_id=warehouse.id,
                book_title=book.title,
                book_slug=book.slug,
                book_cover_url=book.cover_url,
                author_name=book.author_name,
                price=quantize_persist(book.price),
                quantity=quantity,
                subtotal=quantize_persist(book.price) * quantity,
                created_at=order.created_at,
            )
            for book, quantity in priced
        )
        orders.add_history(order.id, None, initial_status, changed_by=user_id, notes="Order created")

        if promotion:
            catalog.record_promotion_usage(promotion, user_id, order.id, amounts.discount)
        if cart is not None:
            catalog.clear_cart(cart.id)

        book_ids = [book.id for book, _ in priced]
        warehouse_id = warehouse.id
        uow.after_commit(lambda: self._enqueue_resync(book_ids, warehouse_id, SOURCE_SALE))
        if not is_cod:
            order_id, order_number = order.id, order.order_number
            uow.after_commit(lambda: self._enqueue_auto_release(order_id, order_number, user_id))
        return order

    # 取消
    async def cancel_order(self, user_id, order_id, req: CancelOrderRequest) -> CancelOrderResponse:
        logger.info(f"Cancelling order | user：{user_id} | order：{order_id} | version：{req.version}")
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = self._get_owned(orders, user_id, order_id)

            if not order.can_be_cancelled:
                raise OrderCannotCancel(f"Order in status {OrderStatus(order.status).value} cannot be cancelled")
            if order.payment_status == OrderPaymentStatus.PAID and order.status != OrderStatus.PENDING:
                raise OrderCannotCancel("Paid orders cannot be cancelled directly, please request a refund")

            previous = OrderStatus(order.status)
            items = orders.get_items(order.id)
            self._release_items(uow, items, actor=user_id, reason="order_cancelled")
            orders.cancel(order.id, req.cancellation_reason, req.version)
            orders.add_history(order.id, previous, OrderStatus.CANCELLED, changed_by=user_id, notes=req.cancellation_reason)

            book_ids = [item.book_id for item in items]
            warehouse_id = order.warehouse_id
            uow.after_commit(lambda: self._enqueue_resync(book_ids, warehouse_id, SOURCE_ORDER_CANCELLED))
            response = CancelOrderResponse(order_id=order.id, status=OrderStatus.CANCELLED, version=req.version + 1)

        logger.info(f"Order cancelled | user：{user_id} | order：{order_id}")
        return response

    async def cancel_by_system(self, order_id, reason: str, source: str, allow_paid: bool = False) -> bool:
        """系统取消（支付超时、风控等）：不校验版本与归属，订单已不可取消时直接返回 False

        已支付订单默认不取消，风控场景可传 allow_paid=True。
        """
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = orders.get_by_id(order_id, for_update=True)
            if not order:
                raise OrderNotFound()
            if not order.can_be_cancelled:
                logger.info(f"System cancel skipped | order：{order_id} | status：{OrderStatus(order.status).value} | source：{source}")
                return False
            if order.payment_status == OrderPaymentStatus.PAID and not allow_paid:
                logger.warning(f"System cancel skipped, order already paid | order：{order_id} | source：{source}")
                return False

            previous = OrderStatus(order.status)
            if not orders.cancel_unversioned(order.id, reason):
                logger.info(f"System cancel lost race | order：{order_id} | source：{source}")
                return False
            items = orders.get_items(order.id)
            self._release_items(uow, items, actor=None, reason=source)
            orders.add_history(order.id, previous, OrderStatus.CANCELLED, changed_by=None, notes=reason)

            book_ids = [item.book_id for item in items]
            warehouse_id = order.warehouse_id
            uow.after_commit(lambda: self._enqueue_resync(book_ids, warehouse_id, SOURCE_ORDER_CANCELLED))

        logger.info(f"Order cancelled by system | order：{order_id} | source：{source} | reason：{reason}")
        return True

    async def auto_release(self, order_id) -> bool:
        """超时未支付自动释放库存并取消订单，重复执行无副作用"""
        with UnitOfWork(self.session_factory) as uow:
            order = OrderRepository(uow.session, self.clock).get_by_id(order_id)
            if not order:
                logger.warning(f"Auto-release skipped, order missing | order：{order_id}")
                return False
            if order.payment_status == OrderPaymentStatus.PAID:
                logger.info(f"Order already paid, skip auto-release | order：{order_id}")
                return False
            if order.payment_method == PaymentMethod.COD:
                logger.info(f"COD order, skip auto-release | order：{order_id}")
                return False
            if not order.can_be_cancelled:
                logger.info(f"Order status not eligible for auto-release | order：{order_id} | status：{OrderStatus(order.status).value}")
                return False
        return await self.cancel_by_system(order_id, AUTO_RELEASE_REASON, "auto_release")

    # 管理端状态流转
    async def update_order_status(self, admin_id, order_id, req: UpdateOrderStatusRequest) -> OrderDetailResponse:
        target = OrderStatus(req.status)
        logger.info(f"Admin updating order status | admin：{admin_id} | order：{order_id} | to：{target.value} | version：{req.version}")
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound()

            # 版本已过期时先报冲突，避免把并发修改误报为非法流转
            if order.version != req.version:
                raise VersionMismatch()

            current = OrderStatus(order.status)
            if not can_transition(current, target):
                raise InvalidStatus(
                    f"Cannot transition order from {current.value} to {target.value}",
                    details={"from": current.value, "to": target.value},
                )

            if target == OrderStatus.CANCELLED:
                items = orders.get_items(order.id)
                self._release_items(uow, items, actor=admin_id, reason="admin_cancelled")
                orders.cancel(order.id, req.admin_note or "Cancelled by admin", req.version)
                book_ids = [item.book_id for item in items]
                warehouse_id = order.warehouse_id
                uow.after_commit(lambda: self._enqueue_resync(book_ids, warehouse_id, SOURCE_ORDER_CANCELLED))
            else:
                orders.update_status(
                    order.id,
                    target,
                    req.version,
                    tracking_number=req.tracking_number,
                    admin_note=req.admin_note,
                    delivered_at=self.clock() if target == OrderStatus.DELIVERED else None,
                )
            orders.add_history(order.id, current, target, changed_by=admin_id, notes=req.admin_note)
            uow.session.refresh(order)
            response = self._detail_response(uow.session, order)

        logger.info(f"Order status updated | order：{order_id} | {current.value} -> {target.value}")
        return response

    # 再次购买
    async def reorder(self, user_id, req: ReorderRequest) -> CreateOrderResponse:
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            original = self._get_owned(orders, user_id, req.order_id)
            lines = [OrderLine(book_id=item.book_id, quantity=item.quantity) for item in orders.get_items(original.id)]
            address_id = req.address_id or original.address_id
            payment_method = PaymentMethod(original.payment_method)

        logger.info(f"Reordering | user：{user_id} | original：{req.order_id} | items：{len(lines)}")
        return await self.create_order_from_items(user_id, lines, address_id, payment_method)

    # 查询
    async def get_order_detail(self, user_id, order_id) -> OrderDetailResponse:
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = self._get_owned(orders, user_id, order_id)
            return self._detail_response(uow.session, order)

    async def get_order_by_number(self, user_id, order_number: str) -> OrderDetailResponse:
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = orders.get_by_number(order_number)
            if not order:
                raise OrderNotFound()
            if order.user_id != user_id:
                raise NotOwner()
            return self._detail_response(uow.session, order)

    async def admin_get_order(self, order_id) -> OrderDetailResponse:
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            order = orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound()
            return self._detail_response(uow.session, order)

    async def list_orders(self, user_id, status: Optional[OrderStatus], page: int = 1, limit: int = 10) -> OrderListResponse:
        page, limit = self._page_args(page, limit)
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            rows, total = orders.list_by_user(user_id, status, page, limit)
            return self._list_response(orders, rows, total, page, limit)

    async def admin_list_orders(self, status: Optional[OrderStatus], page: int = 1, limit: int = 20) -> OrderListResponse:
        page, limit = self._page_args(page, limit)
        with UnitOfWork(self.session_factory) as uow:
            orders = OrderRepository(uow.session, self.clock)
            rows, total = orders.list_all(status, page, limit)
            return self._list_response(orders, rows, total, page, limit)

    # 内部工具
    @staticmethod
    def _validate_payment_method(method) -> PaymentMethod:
        try:
            return PaymentMethod(method)
        except ValueError:
            raise InvalidPaymentMethod(f"Unsupported payment method: {method}")

    @staticmethod
    def _resolve_address(catalog: CatalogRepository, user_id, address_id) -> Address:
        if address_id:
            address = catalog.get_address(address_id)
            if not address or address.user_id != user_id:
                raise InvalidAddress("Address not found or does not belong to user")
            return address
        address = catalog.get_default_address(user_id)
        if not address:
            raise InvalidAddress("No default shipping address")
        return address

    @staticmethod
    def _get_owned(orders: OrderRepository, user_id, order_id) -> Order:
        order = orders.get_by_id(order_id)
        if not order:
            raise OrderNotFound()
        if order.user_id != user_id:
            logger.warning(f"Order ownership check failed | user：{user_id} | order：{order_id}")
            raise NotOwner()
        return order

    def _release_items(self, uow: UnitOfWork, items: List[OrderItem], actor, reason: str) -> None:
        """逐行释放预留，单行失败只记录日志继续处理"""
        inventory = InventoryRepository(uow.session)
        for item in items:
            if item.warehouse_id is None:
                continue
            try:
                inventory.release(item.warehouse_id, item.book_id, item.quantity, actor=actor, reason=reason)
            except Exception as e:
                logger.error(
                    f"Failed to release stock | order：{item.order_id} | book：{item.book_id} | warehouse：{item.warehouse_id} | error：{str(e)}",
                    exc_info=True,
                )

    def _enqueue_resync(self, book_ids, warehouse_id, source: str) -> None:
        for book_id in book_ids:
            try:
                self.dispatcher.enqueue(
                    TASK_STOCK_RESYNC,
                    {"book_id": str(book_id), "warehouse_id": str(warehouse_id) if warehouse_id else None, "source": source},
                    queue=QUEUE_INVENTORY,
                )
            except Exception as e:
                logger.error(f"Failed to enqueue stock resync | book：{book_id} | source：{source} | error：{str(e)}")

    def _enqueue_auto_release(self, order_id, order_number: str, user_id) -> None:
        try:
            self.dispatcher.enqueue(
                TASK_AUTO_RELEASE_RESERVATION,
                {"order_id": str(order_id), "order_number": order_number, "user_id": str(user_id)},
                delay=self.settings.auto_release_minutes * 60,
                max_retry=3,
                queue=QUEUE_ORDERS,
            )
        except Exception as e:
            logger.error(f"Failed to enqueue auto-release | order：{order_number} | error：{str(e)}")

    @staticmethod
    def _created_response(order: Order) -> CreateOrderResponse:
        return CreateOrderResponse(
            order_id=order.id,
            order_number=order.order_number,
            total=order.total,
            status=order.status,
            payment_method=order.payment_method,
        )

    @staticmethod
    def _detail_response(db, order: Order) -> OrderDetailResponse:
        detail = OrderDetailResponse.model_validate(order)
        address = CatalogRepository(db).get_address(order.address_id)
        if address:
            detail = detail.model_copy(update={"address": AddressSummary(
                id=address.id,
                recipient_name=address.recipient_name,
                phone=address.phone,
                full_address=address.full_address,
            )})
        return detail

    @staticmethod
    def _page_args(page: int, limit: int) -> Tuple[int, int]:
        page = max(1, int(page or 1))
        limit = min(MAX_PAGE_SIZE, max(1, int(limit or 10)))
        return page, limit

    @staticmethod
    def _list_response(orders: OrderRepository, rows, total: int, page: int, limit: int) -> OrderListResponse:
        counts = orders.count_items_by_orders(order.id for order in rows)
        summaries = [
            OrderSummaryResponse.model_validate(order).model_copy(update={"items_count": counts.get(order.id, 0)})
            for order in rows
        ]
        return OrderListResponse(
            orders=summaries,
            total=total,
            page=page,
            limit=limit,
            total_pages=ceil(total / limit) if total else 0,
        )
