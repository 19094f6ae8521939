"""
Order Ledger

Orders are created one row per line item inside the table's active session.
Each row carries two independent axes:
- order_status (pending -> preparing -> serving -> served, staff may move back)
- payment_status (unpaid <-> paid)

served_at is set exactly while order_status == served and paid_at exactly
while payment_status == paid. Every committed change is propagated.
"""
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import identity, models
from .errors import DeadlineExceeded, OrderNotFound, SessionConflict, SessionInactive, ValidationError
from .propagation import ChangeKind, ChangePropagator, get_propagator

logger = logging.getLogger(__name__)

MAX_QUANTITY = 99
MAX_NOTE_LENGTH = 500
MAX_CUSTOMER_NAME_LENGTH = 60

ORDER_VIEWS = ("recent", "kitchen", "table")


@dataclass
class SessionContext:
    """Who is ordering, as established by the server (never by the client)."""
    table_node_id: int
    device_id: str
    session_id: str | None = None  # Session the guest was verified against
    customer_name: str | None = None


@dataclass
class CatalogEntry:
    item_id: int
    name: str
    price_cents: int


@dataclass
class BulkDeleteResult:
    deleted: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


CatalogLookup = Callable[[Session, int, int], CatalogEntry | None]


def lookup_menu_item(session: Session, venue_id: int, item_id: int) -> CatalogEntry | None:
    """Default catalog: resolve the item's current name and price."""
    item = session.exec(
        select(models.MenuItem).where(
            models.MenuItem.id == item_id,
            models.MenuItem.venue_id == venue_id,
        )
    ).first()
    if not item or not item.is_available:
        return None
    return CatalogEntry(item_id=item.id, name=item.name, price_cents=item.price_cents)


def _clean_customer_name(name: str | None) -> str | None:
    if name is None:
        return None
    name = name.strip()
    if len(name) > MAX_CUSTOMER_NAME_LENGTH:
        raise ValidationError(f"Customer name must be at most {MAX_CUSTOMER_NAME_LENGTH} characters")
    return name or None


def place_order(
    session: Session,
    context: SessionContext,
    items: Iterable[models.OrderLineCreate],
    catalog: CatalogLookup = lookup_menu_item,
    propagator: ChangePropagator | None = None,
    deadline: float | None = None,
) -> list[models.Order]:
    """
    Create one order row per line item in the table's active session.

    `deadline` is a `time.monotonic()` value. It is checked before each row
    is written; once it has passed nothing more is written and
    DeadlineExceeded carries the rows already committed.
    """
    items = list(items)
    if not items:
        raise ValidationError("Order must have at least one item")
    for line in items:
        if line.quantity < 1 or line.quantity > MAX_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_QUANTITY}")
    customer_name = _clean_customer_name(context.customer_name)

    table = identity.get_table(session, context.table_node_id)
    active = identity.find_active_session(session, table.id)
    if active is None:
        raise SessionInactive(f"Table {table.label} has no active session")
    if context.session_id is not None and context.session_id != active.id:
        raise SessionConflict(
            f"Session {context.session_id} is no longer active",
            expected_session_id=context.session_id,
            active_session_id=active.id,
        )

    # Resolve every line before writing anything
    entries = []
    for line in items:
        entry = catalog(session, table.venue_id, line.item_id)
        if entry is None:
            raise ValidationError(f"Menu item {line.item_id} not found")
        if entry.price_cents < 0:
            raise ValidationError(f"Menu item {line.item_id} has an invalid price")
        entries.append((line, entry))

    propagator = propagator or get_propagator()
    created = []
    for line, entry in entries:
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(
                f"Table {table.label}: deadline passed after {len(created)} of {len(entries)} order(s)"
            )
            raise DeadlineExceeded("Order placement ran out of time", committed=created)
        order = models.Order(
            venue_id=table.venue_id,
            table_node_id=table.id,
            session_id=active.id,
            table_label=table.label,
            item_id=entry.item_id,
            item_name=entry.name,
            unit_price_cents=entry.price_cents,
            quantity=line.quantity,
            customer_name=customer_name,
            device_id=context.device_id,
        )
        session.add(order)
        session.commit()
        session.refresh(order)
        # Subscribers may see a multi-item order arrive row by row
        propagator.publish_order_change(order, ChangeKind.created)
        created.append(order)

    logger.info(f"Table {table.label}: {len(created)} order(s) placed in session {active.id} by device {context.device_id}")
    return created


def get_order(session: Session, order_id: int, venue_id: int | None = None) -> models.Order:
    order = session.get(models.Order, order_id)
    if not order or (venue_id is not None and order.venue_id != venue_id):
        raise OrderNotFound(order_id)
    return order


def apply_status(order: models.Order, new_status: models.OrderStatus) -> None:
    if new_status == models.OrderStatus.served:
        if order.order_status != models.OrderStatus.served or order.served_at is None:
            order.served_at = models.utcnow()
    else:
        order.served_at = None
    order.order_status = new_status


def apply_payment(order: models.Order, new_payment_status: models.PaymentStatus) -> None:
    if new_payment_status == models.PaymentStatus.paid:
        if order.payment_status != models.PaymentStatus.paid or order.paid_at is None:
            order.paid_at = models.utcnow()
    else:
        order.paid_at = None
    order.payment_status = new_payment_status


def _save(session: Session, order: models.Order, propagator: ChangePropagator | None) -> models.Order:
    order.updated_at = models.utcnow()
    session.add(order)
    session.commit()
    session.refresh(order)
    (propagator or get_propagator()).publish_order_change(order, ChangeKind.updated)
    return order


def update_status(
    session: Session,
    order_id: int,
    new_status: models.OrderStatus,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> models.Order:
    order = get_order(session, order_id, venue_id)
    apply_status(order, new_status)
    return _save(session, order, propagator)


def update_payment(
    session: Session,
    order_id: int,
    new_payment_status: models.PaymentStatus,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> models.Order:
    order = get_order(session, order_id, venue_id)
    apply_payment(order, new_payment_status)
    return _save(session, order, propagator)


def annotate(
    session: Session,
    order_id: int,
    note: str | None,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> models.Order:
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"Note must be at most {MAX_NOTE_LENGTH} characters")
    order = get_order(session, order_id, venue_id)
    if note is not None:
        note = note.strip() or None
    order.note = note
    return _save(session, order, propagator)


def toggle_served(
    session: Session,
    order_id: int,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> models.Order:
    """Kitchen board shortcut: served <-> preparing."""
    order = get_order(session, order_id, venue_id)
    if order.order_status == models.OrderStatus.served:
        apply_status(order, models.OrderStatus.preparing)
    else:
        apply_status(order, models.OrderStatus.served)
    return _save(session, order, propagator)


def order_snapshot(order: models.Order) -> dict:
    """Payload for a Deleted event; taken before the row goes away."""
    payload = order.model_dump(mode="json")
    payload["amount_cents"] = order.amount_cents
    return payload


def delete_order(
    session: Session,
    order_id: int,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> None:
    order = get_order(session, order_id, venue_id)
    payload = order_snapshot(order)
    session.delete(order)
    session.commit()
    (propagator or get_propagator()).publish_order_change(payload, ChangeKind.deleted)


def delete_orders(
    session: Session,
    order_ids: Iterable[int],
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> BulkDeleteResult:
    """Delete one by one; a failing id never stops the others."""
    result = BulkDeleteResult()
    for order_id in dict.fromkeys(order_ids):
        try:
            delete_order(session, order_id, venue_id, propagator=propagator)
        except OrderNotFound:
            logger.warning(f"Bulk delete: order {order_id} not found")
            result.failed.append(order_id)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Bulk delete: order {order_id} failed: {e}", exc_info=True)
            result.failed.append(order_id)
        else:
            result.deleted.append(order_id)
    return result


# ============ READ VIEWS ============

def list_session_orders(session: Session, session_id: str) -> list[models.Order]:
    return list(session.exec(
        select(models.Order)
        .where(models.Order.session_id == session_id)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
    ).all())


def natural_key(label: str) -> list:
    return [(0, int(part), "") if part.isdigit() else (1, 0, part.lower())
            for part in re.split(r"(\d+)", label) if part]


def _newest_first(order: models.Order) -> tuple:
    return (order.created_at, order.id or 0)


def sort_orders(orders: list[models.Order], view: str = "recent") -> list[models.Order]:
    """Read-time projections; storage order is never relied on."""
    if view not in ORDER_VIEWS:
        raise ValidationError(f"Unknown view '{view}', expected one of {', '.join(ORDER_VIEWS)}")
    ordered = sorted(orders, key=_newest_first, reverse=True)
    if view == "kitchen":
        # Stable sort keeps recency inside each group
        ordered.sort(key=lambda o: o.order_status == models.OrderStatus.served)
    elif view == "table":
        ordered.sort(key=lambda o: natural_key(o.table_label))
    return ordered


def list_venue_orders(
    session: Session,
    venue_id: int,
    view: str = "recent",
    include_finished: bool = True,
) -> list[models.Order]:
    statement = select(models.Order).where(models.Order.venue_id == venue_id)
    if not include_finished:
        statement = statement.where(models.Order.order_status != models.OrderStatus.served)
    return sort_orders(list(session.exec(statement).all()), view)


def status_board(orders: Iterable[models.Order]) -> dict[models.OrderStatus, list[models.Order]]:
    board = {status: [] for status in models.OrderStatus}
    for order in orders:
        board[order.order_status].append(order)
    return board
