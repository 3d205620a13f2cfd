from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from bookstore.models.order import (
    Order, OrderItem, OrderStatusHistory, OrderNumberSequence, OrderStatus, OrderPaymentStatus, CANCELLABLE_STATUSES,
)
from bookstore.utils.clock import utcnow
from bookstore.utils.errors import OrderNotFound, VersionMismatch
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


def format_order_number(day, seq: int) -> str:
    return f"ORD-{day.strftime('%Y%m%d')}-{seq:03d}"


class OrderRepository:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    # 订单号
    def next_order_number(self, now: datetime = None) -> str:
        """按天递增的订单号

        先用单条 UPDATE 在数据库内自增（持有行锁 / 写锁直到事务结束），再读回本事务写入的值；
        当天计数行不存在时在保存点内插入，唯一约束冲突说明其他事务已插入，重新自增。
        """
        day = (now or self.clock()).date()
        for _ in range(3):
            result = self.db.execute(
                update(OrderNumberSequence)
                .where(OrderNumberSequence.day == day)
                .values(last_value=OrderNumberSequence.last_value + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                value = (
                    self.db.query(OrderNumberSequence.last_value)
                    .filter(OrderNumberSequence.day == day)
                    .scalar()
                )
                return format_order_number(day, value)
            try:
                with self.db.begin_nested():
                    self.db.add(OrderNumberSequence(day=day, last_value=1))
                return format_order_number(day, 1)
            except IntegrityError:
                # 其他事务已创建当天计数行
                logger.debug(f"Order number sequence created concurrently | day：{day}")
        raise RuntimeError(f"Could not allocate order number for {day}")

    # 写入
    def insert(self, order: Order) -> Order:
        now = self.clock()
        order.order_number = self.next_order_number(now)
        order.created_at = now
        order.updated_at = now
        order.version = 1
        self.db.add(order)
        self.db.flush()
        return order

    def insert_items(self, items: Iterable[OrderItem]) -> None:
        self.db.add_all(list(items))
        self.db.flush()

    def add_history(self, order_id, from_status, to_status, changed_by=None, notes: str = None) -> OrderStatusHistory:
        history = OrderStatusHistory(
            order_id=order_id,
            from_status=OrderStatus(from_status).value if from_status else None,
            to_status=OrderStatus(to_status).value,
            changed_by=changed_by,
            notes=notes,
            created_at=self.clock(),
        )
        self.db.add(history)
        self.db.flush()
        return history

    def _ensure_exists(self, order_id):
        exists = self.db.query(Order.id).filter(Order.id == order_id).first()
        if not exists:
            raise OrderNotFound()

    def update_status(
        self,
        order_id,
        new_status: OrderStatus,
        expected_version: int,
        tracking_number: Optional[str] = None,
        admin_note: Optional[str] = None,
        delivered_at: Optional[datetime] = None,
    ) -> None:
        """带版本校验的状态更新，可选字段在同一条语句中更新"""
        values = {
            "status": OrderStatus(new_status),
            "version": Order.version + 1,
            "updated_at": self.clock(),
        }
        if tracking_number is not None:
            values["tracking_number"] = tracking_number
        if admin_note is not None:
            values["admin_note"] = admin_note
        if delivered_at is not None:
            values["delivered_at"] = delivered_at

        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(**values)
        )
        if result.rowcount == 0:
            self._ensure_exists(order_id)
            raise VersionMismatch()

    def cancel(self, order_id, reason: str, expected_version: int) -> None:
        now = self.clock()
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(
                status=OrderStatus.CANCELLED,
                cancellation_reason=reason,
                cancelled_at=now,
                version=Order.version + 1,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            self._ensure_exists(order_id)
            raise VersionMismatch()

    def cancel_unversioned(self, order_id, reason: str) -> bool:
        """系统取消：不校验版本，只要求订单仍处于可取消状态"""
        now = self.clock()
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(list(CANCELLABLE_STATUSES)))
            .values(
                status=OrderStatus.CANCELLED,
                cancellation_reason=reason,
                cancelled_at=now,
                version=Order.version + 1,
                updated_at=now,
            )
        )
        return result.rowcount > 0

    def apply_payment_result(self, order_id, payment_status: OrderPaymentStatus, paid_at: datetime = None) -> Optional[Order]:
        """同步支付结果到订单；支付成功时 pending 订单推进为 confirmed"""
        order = self.db.query(Order).filter(Order.id == order_id).with_for_update().first()
        if not order:
            raise OrderNotFound()
        previous = OrderStatus(order.status)
        order.payment_status = OrderPaymentStatus(payment_status)
        if payment_status == OrderPaymentStatus.PAID:
            order.paid_at = paid_at or self.clock()
            if previous == OrderStatus.PENDING:
                order.status = OrderStatus.CONFIRMED
        order.version = order.version + 1
        order.updated_at = self.clock()
        self.db.flush()
        return order

    # 查询
    def get_by_id(self, order_id, for_update: bool = False) -> Optional[Order]:
        query = self.db.query(Order).filter(Order.id == order_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get_by_number(self, order_number: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.order_number == order_number).first()

    def get_detail(self, order_id) -> Optional[Order]:
        return (
            self.db.query(Order)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .filter(Order.id == order_id)
            .first()
        )

    def get_items(self, order_id) -> List[OrderItem]:
        return (
            self.db.query(OrderItem)
            .filter(OrderItem.order_id == order_id)
            .order_by(OrderItem.created_at)
            .all()
        )

    def get_history(self, order_id) -> List[OrderStatusHistory]:
        return (
            self.db.query(OrderStatusHistory)
            .filter(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at)
            .all()
        )

    def list_by_user(self, user_id, status: Optional[OrderStatus], page: int, limit: int) -> Tuple[List[Order], int]:
        query = self.db.query(Order).filter(Order.user_id == user_id)
        return self._paginate(query, status, page, limit)

    def list_all(self, status: Optional[OrderStatus], page: int, limit: int) -> Tuple[List[Order], int]:
        return self._paginate(self.db.query(Order), status, page, limit)

    def _paginate(self, query, status, page: int, limit: int):
        if status:
            query = query.filter(Order.status == OrderStatus(status))
        total = query.count()
        rows = (
            query.order_by(Order.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def count_items_by_orders(self, order_ids: Iterable) -> Dict:
        """批量统计订单行数，避免列表页 N+1 查询"""
        ids = list(order_ids)
        if not ids:
            return {}
        rows = (
            self.db.query(OrderItem.order_id, func.count(OrderItem.id))
            .filter(OrderItem.order_id.in_(ids))
            .group_by(OrderItem.order_id)
            .all()
        )
        counts = {order_id: 0 for order_id in ids}
        counts.update({order_id: count for order_id, count in rows})
        return counts
