"""
Attribution: who ordered what at a shared table.

Nothing here is stored. "Mine" vs "group" is recomputed from the order rows
on every read, so a device that loses its local identity simply sees its
earlier orders move into the group list.
"""
from collections.abc import Iterable
from dataclasses import dataclass

from sqlmodel import Session

from . import models
from .orders import list_session_orders


@dataclass
class Partition:
    mine: list[models.Order]
    group: list[models.Order]


def partition(orders: Iterable[models.Order], device_id: str | None) -> Partition:
    mine, group = [], []
    for order in orders:
        (mine if device_id and order.device_id == device_id else group).append(order)
    return Partition(mine=mine, group=group)


def participants(orders: Iterable[models.Order]) -> set[str]:
    return {order.customer_name.strip() for order in orders
            if order.customer_name and order.customer_name.strip()}


def running_total(orders: Iterable[models.Order]) -> int:
    """Table total in cents; unpaid orders count too."""
    return sum(order.amount_cents for order in orders)


def partition_session(session: Session, session_id: str, device_id: str | None) -> Partition:
    return partition(list_session_orders(session, session_id), device_id)


def table_summary(session: Session, session_id: str) -> dict:
    orders = list_session_orders(session, session_id)
    paid = [o for o in orders if o.payment_status == models.PaymentStatus.paid]
    return {
        "session_id": session_id,
        "order_count": len(orders),
        "participants": sorted(participants(orders)),
        "total_cents": running_total(orders),
        "paid_cents": running_total(paid),
        "unpaid_cents": running_total(orders) - running_total(paid),
        "open_orders": sum(1 for o in orders if o.order_status != models.OrderStatus.served),
    }
