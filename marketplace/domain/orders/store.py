from __future__ import annotations

import math
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Generic, Sequence, TypeVar

from sqlalchemy import String, Select, cast, desc, exists, func, or_, select, update
from sqlalchemy.orm import Session

from marketplace.core.clock import as_utc, now_utc
from marketplace.core.errors import OrderNotFound
from marketplace.domain.orders.status import FINAL_STATUSES, PENDING_QUEUE_STATUSES
from marketplace.persistence.models import (
    OrderItemModel,
    OrderModel,
    PaymentModel,
    RefundModel,
    StatusHistoryModel,
    VendorOrderModel,
)

T = TypeVar("T")

_BASE36 = string.digits + string.ascii_uppercase
SORT_COLUMNS = {"date": OrderModel.ordered_at, "amount": OrderModel.total_amount}


def generate_order_number(at: datetime | None = None) -> str:
    at = at or now_utc()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"ORD-{int(at.timestamp() * 1000)}-{suffix}"


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict:
        return {
            "current_page": self.page,
            "total_pages": self.total_pages,
            "total_orders": self.total,
            "has_next": self.page < self.total_pages,
            "has_prev": self.page > 1,
        }


@dataclass
class OrderQuery:
    status: str | None = None
    page: int = 1
    limit: int = 10
    sort_by: str = "date"
    sort_order: str = "desc"
    text: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    start: datetime | None = None
    end: datetime | None = None


class OrderStore:
    """Persistence operations over the order aggregate.

    Writes flush immediately so optimistic version conflicts surface inside the
    calling operation rather than at commit.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, order_id: str) -> OrderModel:
        order = self.session.get(OrderModel, order_id)
        if order is None or order.is_deleted:
            raise OrderNotFound(order_id)
        return order

    def get_by_number(self, order_number: str) -> OrderModel:
        order = self.session.scalars(
            select(OrderModel).where(OrderModel.order_number == order_number, OrderModel.is_deleted.is_(False))
        ).first()
        if order is None:
            raise OrderNotFound(order_number)
        return order

    def find_by_idempotency_key(self, user_id: str, key: str) -> OrderModel | None:
        return self.session.scalars(
            select(OrderModel).where(OrderModel.user_id == user_id, OrderModel.idempotency_key == key)
        ).first()

    def add(self, order: OrderModel) -> OrderModel:
        self.session.add(order)
        self.session.flush()
        return order

    def flush(self) -> None:
        self.session.flush()

    def append_history(
        self,
        order: OrderModel,
        status: str,
        changed_by: str | None,
        notes: str | None = None,
        location: str | None = None,
        at: datetime | None = None,
    ) -> StatusHistoryModel:
        at = at or now_utc()
        if order.status_history:
            last = as_utc(order.status_history[-1].timestamp)
            if at < last:
                at = last
        entry = StatusHistoryModel(status=status, changed_by=changed_by, notes=notes, location=location, timestamp=at)
        order.status_history.append(entry)
        return entry

    def track_view(self, order: OrderModel, at: datetime | None = None) -> None:
        at = at or now_utc()
        self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order.id)
            .values(view_count=OrderModel.view_count + 1, last_viewed_at=at)
            .execution_options(synchronize_session=False)
        )

    def soft_delete(self, order: OrderModel, at: datetime | None = None) -> None:
        order.is_deleted = True
        order.updated_at = at or now_utc()
        self.session.flush()

    def active_payment(self, order_id: str) -> PaymentModel | None:
        return self.session.scalars(
            select(PaymentModel)
            .where(PaymentModel.order_id == order_id, PaymentModel.status.in_(("completed", "partially_refunded")))
            .order_by(desc(PaymentModel.created_at))
        ).first()

    def payments_for(self, order_id: str) -> list[PaymentModel]:
        return list(
            self.session.scalars(
                select(PaymentModel).where(PaymentModel.order_id == order_id).order_by(PaymentModel.created_at)
            ).all()
        )

    def refunds_for(self, order_id: str) -> list[RefundModel]:
        return list(
            self.session.scalars(
                select(RefundModel).where(RefundModel.order_id == order_id).order_by(RefundModel.created_at)
            ).all()
        )

    def add_record(self, record: PaymentModel | RefundModel) -> None:
        self.session.add(record)
        self.session.flush()

    def _paginate(self, stmt: Select, query: OrderQuery) -> Page[OrderModel]:
        total = self.session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
        column = SORT_COLUMNS.get(query.sort_by, OrderModel.ordered_at)
        ordering = column.asc() if query.sort_order == "asc" else column.desc()
        rows = self.session.scalars(
            stmt.order_by(ordering, OrderModel.id).offset((query.page - 1) * query.limit).limit(query.limit)
        ).all()
        return Page(items=list(rows), total=total, page=query.page, limit=query.limit)

    @staticmethod
    def _base() -> Select:
        return select(OrderModel).where(OrderModel.is_deleted.is_(False))

    def list_for_customer(self, user_id: str, query: OrderQuery) -> Page[OrderModel]:
        stmt = self._base().where(OrderModel.user_id == user_id)
        if query.status:
            stmt = stmt.where(OrderModel.status == query.status)
        return self._paginate(stmt, query)

    def list_for_vendor(self, vendor_id: str, query: OrderQuery) -> Page[OrderModel]:
        """Orders containing the vendor; ``status`` filters the vendor's own sub-order."""
        sub = select(VendorOrderModel.order_id).where(VendorOrderModel.vendor_id == vendor_id)
        if query.status:
            sub = sub.where(VendorOrderModel.status == query.status)
        stmt = self._base().where(OrderModel.id.in_(sub))
        return self._paginate(stmt, query)

    def list_all(self, query: OrderQuery) -> Page[OrderModel]:
        stmt = self._base()
        if query.status:
            stmt = stmt.where(OrderModel.status == query.status)
        if query.start is not None:
            stmt = stmt.where(OrderModel.ordered_at >= query.start)
        if query.end is not None:
            stmt = stmt.where(OrderModel.ordered_at < query.end)
        return self._paginate(stmt, query)

    def search(self, query: OrderQuery, vendor_id: str | None = None, user_id: str | None = None) -> Page[OrderModel]:
        stmt = self._base()
        if user_id is not None:
            stmt = stmt.where(OrderModel.user_id == user_id)
        if vendor_id is not None:
            stmt = stmt.where(
                OrderModel.id.in_(select(VendorOrderModel.order_id).where(VendorOrderModel.vendor_id == vendor_id))
            )
        if query.text:
            pattern = f"%{query.text.strip()}%"
            item_match = exists().where(OrderItemModel.order_id == OrderModel.id, OrderItemModel.name.ilike(pattern))
            stmt = stmt.where(
                or_(
                    OrderModel.order_number.ilike(pattern),
                    cast(OrderModel.customer_info, String).ilike(pattern),
                    item_match,
                )
            )
        if query.status:
            stmt = stmt.where(OrderModel.status == query.status)
        if query.min_amount is not None:
            stmt = stmt.where(OrderModel.total_amount >= query.min_amount)
        if query.max_amount is not None:
            stmt = stmt.where(OrderModel.total_amount <= query.max_amount)
        if query.start is not None:
            stmt = stmt.where(OrderModel.ordered_at >= query.start)
        if query.end is not None:
            stmt = stmt.where(OrderModel.ordered_at < query.end)
        return self._paginate(stmt, query)

    def pending(self, vendor_id: str | None = None, limit: int = 100) -> Sequence[OrderModel]:
        stmt = self._base().where(OrderModel.status.in_(tuple(PENDING_QUEUE_STATUSES)))
        if vendor_id is not None:
            stmt = stmt.where(
                OrderModel.id.in_(select(VendorOrderModel.order_id).where(VendorOrderModel.vendor_id == vendor_id))
            )
        return self.session.scalars(stmt.order_by(OrderModel.ordered_at).limit(limit)).all()

    def overdue(self, cutoff: datetime, vendor_id: str | None = None, limit: int = 100) -> Sequence[OrderModel]:
        stmt = self._base().where(
            OrderModel.status.not_in(tuple(FINAL_STATUSES)),
            OrderModel.ordered_at < cutoff,
        )
        if vendor_id is not None:
            stmt = stmt.where(
                OrderModel.id.in_(select(VendorOrderModel.order_id).where(VendorOrderModel.vendor_id == vendor_id))
            )
        return self.session.scalars(stmt.order_by(OrderModel.ordered_at).limit(limit)).all()
