from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    active = "active"
    ended = "ended"


class OrderStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    serving = "serving"
    served = "served"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"


class Venue(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)

    users: list["User"] = Relationship(back_populates="venue")


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    hashed_password: str
    full_name: str | None = None

    venue_id: int | None = Field(default=None, foreign_key="venue.id")
    venue: Venue | None = Relationship(back_populates="users")


class VenueMixin(SQLModel):
    venue_id: int = Field(foreign_key="venue.id", index=True)


class TableNode(VenueMixin, table=True):
    """A physical table and the QR token printed on it."""
    id: int | None = Field(default=None, primary_key=True)
    label: str  # e.g., "T7", "Terrace 2"
    token: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    pin_required_default: bool = Field(default=True)  # Applied to each new session
    created_at: datetime = Field(default_factory=utcnow)


class MenuItem(VenueMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    price_cents: int
    is_available: bool = Field(default=True, index=True)


class TableSession(VenueMixin, table=True):
    """
    One continuous occupancy of a table.

    `active_table_node_id` mirrors `table_node_id` while the session is active
    and is NULL once it ends. Its UNIQUE constraint is what guarantees at most
    one active session per table, across processes.
    """
    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)
    table_node_id: int = Field(foreign_key="tablenode.id", index=True)
    status: SessionStatus = Field(default=SessionStatus.active, index=True)
    verification_code: str
    pin_required: bool = Field(default=True)
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    active_table_node_id: int | None = Field(default=None, unique=True)


class Order(VenueMixin, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_node_id: int = Field(foreign_key="tablenode.id", index=True)
    session_id: str = Field(foreign_key="tablesession.id", index=True)
    table_label: str  # Snapshot of table label at order time

    item_id: int
    item_name: str  # Snapshot of menu item name at order time
    unit_price_cents: int  # Snapshot of price at order time
    quantity: int

    customer_name: str | None = Field(default=None, index=True)
    device_id: str = Field(index=True)

    order_status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.unpaid, index=True)
    note: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    served_at: datetime | None = None
    paid_at: datetime | None = None

    @property
    def amount_cents(self) -> int:
        return self.quantity * self.unit_price_cents


# Request/Response Models
class TableCreate(SQLModel):
    label: str
    pin_required_default: bool = True


class TableUpdate(SQLModel):
    label: str | None = None
    pin_required_default: bool | None = None


class MenuItemCreate(SQLModel):
    name: str
    price_cents: int
    is_available: bool = True


class OrderLineCreate(SQLModel):
    item_id: int
    quantity: int = 1


class OrderCreate(SQLModel):
    items: list[OrderLineCreate]
    customer_name: str | None = None
    session_id: str | None = None  # The session the guest believes is active


class PinVerify(SQLModel):
    pin: str


class PinRequirementUpdate(SQLModel):
    required: bool


class OrderStatusUpdate(SQLModel):
    status: OrderStatus


class OrderPaymentUpdate(SQLModel):
    payment_status: PaymentStatus


class OrderNoteUpdate(SQLModel):
    note: str | None = None


class BulkDeleteRequest(SQLModel):
    order_ids: list[int]


class SessionPublic(SQLModel):
    """Guest-facing session view; never carries the PIN."""
    id: str
    table_node_id: int
    table_label: str
    status: SessionStatus
    pin_required: bool
    started_at: datetime


class OrderRead(SQLModel):
    id: int
    session_id: str
    table_label: str
    item_id: int
    item_name: str
    quantity: int
    unit_price_cents: int
    amount_cents: int
    customer_name: str | None
    device_id: str
    order_status: OrderStatus
    payment_status: PaymentStatus
    note: str | None
    created_at: datetime
    updated_at: datetime
    served_at: datetime | None
    paid_at: datetime | None

    @classmethod
    def from_order(cls, order: Order) -> "OrderRead":
        return cls(amount_cents=order.amount_cents, **order.model_dump())
