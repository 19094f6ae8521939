import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from sqlmodel import Session, select

from . import attribution, identity, models, orders, security, sessions
from .db import check_db_connection, create_db_and_tables, get_session
from .errors import (
    DeadlineExceeded,
    OrderNotFound,
    PartialBulkFailure,
    SessionConflict,
    SessionInactive,
    SessionNotFound,
    TableNotFound,
    ValidationError,
)
from .propagation import ChangePropagator, get_propagator
from .settings import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    create_db_and_tables()
    yield


app = FastAPI(
    title="Tableside API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CurrentUser = Annotated[models.User, Depends(security.get_current_user)]
Propagator = Annotated[ChangePropagator, Depends(get_propagator)]


# ============ ERROR MAPPING ============

@app.exception_handler(TableNotFound)
async def table_not_found_handler(request: Request, exc: TableNotFound):
    return JSONResponse(status_code=404, content={"detail": "Table not found"})


@app.exception_handler(OrderNotFound)
async def order_not_found_handler(request: Request, exc: OrderNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    # Guests re-resolve the table session; staff refresh their board
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "reresolve": isinstance(exc, SessionInactive)},
    )


@app.exception_handler(SessionConflict)
async def session_conflict_handler(request: Request, exc: SessionConflict):
    logger.info(f"Session conflict on {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc), "reprompt": True})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(PartialBulkFailure)
async def partial_bulk_failure_handler(request: Request, exc: PartialBulkFailure):
    logger.warning(f"Bulk delete partially failed: {exc.failed}")
    return JSONResponse(
        status_code=207,
        content={"status": "partial", "deleted": exc.deleted, "failed": exc.failed},
    )


def guest_deadline() -> float:
    """Monotonic time by which a guest verify or order call must finish."""
    return time.monotonic() + settings.guest_request_timeout_seconds


# ============ HEALTH ============

@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")


# ============ AUTH ============

@app.post("/register")
def register(
    venue_name: str,
    email: str,
    password: str,
    full_name: str | None = None,
    session: Session = Depends(get_session)
) -> dict:
    existing_user = session.exec(select(models.User).where(models.User.email == email)).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    venue = models.Venue(name=venue_name)
    session.add(venue)
    session.commit()
    session.refresh(venue)

    user = models.User(
        email=email,
        hashed_password=security.get_password_hash(password),
        full_name=full_name,
        venue_id=venue.id
    )
    session.add(user)
    session.commit()

    return {"status": "created", "venue_id": venue.id, "email": email}


@app.post("/token")
def login_for_access_token(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    session: Session = Depends(get_session)
):
    statement = select(models.User).where(models.User.email == form_data.username)
    user = session.exec(statement).first()

    if not user or not security.verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = security.create_access_token(
        data={"sub": user.email, "venue_id": user.venue_id},
        expires_delta=security.timedelta(minutes=settings.access_token_expire_minutes)
    )

    response = JSONResponse(content={"access_token": access_token, "token_type": "bearer"})
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
        max_age=settings.access_token_expire_minutes * 60
    )
    return response


@app.post("/logout")
def logout():
    response = JSONResponse(content={"status": "success", "message": "Logged out"})
    response.delete_cookie(key="access_token", path="/")
    return response


# ============ TABLES ============

@app.get("/tables")
def list_tables(
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> list[models.TableNode]:
    return session.exec(
        select(models.TableNode).where(models.TableNode.venue_id == current_user.venue_id)
    ).all()


@app.get("/tables/with-status")
def list_tables_with_status(
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> list[dict]:
    """Tables with their active session, participants and running total."""
    tables = session.exec(
        select(models.TableNode).where(models.TableNode.venue_id == current_user.venue_id)
    ).all()

    result = []
    for table in sorted(tables, key=lambda t: orders.natural_key(t.label)):
        active = identity.find_active_session(session, table.id)
        entry = {
            "id": table.id,
            "label": table.label,
            "token": table.token,
            "status": "occupied" if active else "available",
            "session": None,
        }
        if active:
            entry["session"] = {
                "id": active.id,
                "verification_code": active.verification_code,
                "pin_required": active.pin_required,
                "started_at": active.started_at.isoformat(),
                **attribution.table_summary(session, active.id),
            }
        result.append(entry)

    return result


@app.post("/tables")
def create_table(
    table_data: models.TableCreate,
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> models.TableNode:
    if not table_data.label.strip():
        raise ValidationError("Table label is required")
    table = models.TableNode(
        label=table_data.label.strip(),
        venue_id=current_user.venue_id,
        pin_required_default=table_data.pin_required_default,
    )
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@app.put("/tables/{table_id}")
def update_table(
    table_id: int,
    table_update: models.TableUpdate,
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> models.TableNode:
    """Only the label and the PIN default can change once a table exists."""
    table = identity.get_table(session, table_id, current_user.venue_id)

    if table_update.label is not None:
        if not table_update.label.strip():
            raise ValidationError("Table label is required")
        table.label = table_update.label.strip()
    if table_update.pin_required_default is not None:
        table.pin_required_default = table_update.pin_required_default

    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@app.delete("/tables/{table_id}")
def delete_table(
    table_id: int,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> dict:
    """Delete a table together with its session history and orders."""
    sessions.purge_table(session, table_id, venue_id=current_user.venue_id, propagator=propagator)
    return {"status": "deleted", "id": table_id}


# ============ MENU ITEMS (catalog collaborator) ============

@app.get("/menu-items")
def list_menu_items(
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> list[models.MenuItem]:
    return session.exec(
        select(models.MenuItem).where(models.MenuItem.venue_id == current_user.venue_id)
    ).all()


@app.post("/menu-items")
def create_menu_item(
    item_data: models.MenuItemCreate,
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> models.MenuItem:
    if item_data.price_cents < 0:
        raise ValidationError("Price must not be negative")
    item = models.MenuItem(venue_id=current_user.venue_id, **item_data.model_dump())
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


# ============ SESSIONS (Protected) ============

def _session_for_staff(session: Session, session_id: str, venue_id: int) -> models.TableSession:
    record = identity.get_session_record(session, session_id)
    if record.venue_id != venue_id:
        raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
    return record


@app.get("/sessions")
def list_sessions(
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> list[dict]:
    result = []
    for record in sessions.list_active_sessions(session, current_user.venue_id):
        table = session.get(models.TableNode, record.table_node_id)
        result.append({
            "id": record.id,
            "table_node_id": record.table_node_id,
            "table_label": table.label if table else "Unknown",
            "verification_code": record.verification_code,
            "pin_required": record.pin_required,
            "started_at": record.started_at.isoformat(),
        })
    return result


@app.post("/tables/{table_id}/sessions")
def start_session(
    table_id: int,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.TableSession:
    table = identity.get_table(session, table_id, current_user.venue_id)
    return sessions.start_manual_session(session, table.id, propagator=propagator)


@app.post("/sessions/{session_id}/rotate-pin")
def rotate_session_pin(
    session_id: str,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> dict:
    _session_for_staff(session, session_id, current_user.venue_id)
    new_pin = sessions.rotate_pin(session, session_id, propagator=propagator)
    return {"status": "rotated", "session_id": session_id, "verification_code": new_pin}


@app.put("/sessions/{session_id}/pin-required")
def update_pin_requirement(
    session_id: str,
    update: models.PinRequirementUpdate,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.TableSession:
    _session_for_staff(session, session_id, current_user.venue_id)
    return sessions.toggle_pin_requirement(session, session_id, update.required, propagator=propagator)


@app.post("/sessions/{session_id}/terminate")
def terminate_session(
    session_id: str,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> dict:
    _session_for_staff(session, session_id, current_user.venue_id)
    new = sessions.terminate_and_reset(session, session_id, propagator=propagator)
    return {"status": "reset", "ended_session_id": session_id, "session": new.model_dump(mode="json")}


@app.post("/sessions/{session_id}/end")
def end_table_session(
    session_id: str,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.TableSession:
    _session_for_staff(session, session_id, current_user.venue_id)
    return sessions.end_session(session, session_id, propagator=propagator)


# ============ ORDERS (Protected) ============

@app.get("/orders")
def list_orders(
    current_user: CurrentUser,
    view: str = Query("recent", description="recent, kitchen or table"),
    include_finished: bool = Query(True, description="Include served orders"),
    session: Session = Depends(get_session)
) -> list[models.OrderRead]:
    found = orders.list_venue_orders(session, current_user.venue_id, view=view, include_finished=include_finished)
    return [models.OrderRead.from_order(order) for order in found]


@app.get("/orders/board")
def kitchen_board(
    current_user: CurrentUser,
    session: Session = Depends(get_session)
) -> dict:
    found = orders.list_venue_orders(session, current_user.venue_id, view="recent")
    board = orders.status_board(found)
    return {
        order_status.value: [models.OrderRead.from_order(order) for order in board[order_status]]
        for order_status in models.OrderStatus
    }


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.OrderRead:
    order = orders.update_status(
        session, order_id, status_update.status, venue_id=current_user.venue_id, propagator=propagator
    )
    return models.OrderRead.from_order(order)


@app.put("/orders/{order_id}/payment")
def update_order_payment(
    order_id: int,
    payment_update: models.OrderPaymentUpdate,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.OrderRead:
    order = orders.update_payment(
        session, order_id, payment_update.payment_status, venue_id=current_user.venue_id, propagator=propagator
    )
    return models.OrderRead.from_order(order)


@app.put("/orders/{order_id}/note")
def update_order_note(
    order_id: int,
    note_update: models.OrderNoteUpdate,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.OrderRead:
    order = orders.annotate(session, order_id, note_update.note, venue_id=current_user.venue_id, propagator=propagator)
    return models.OrderRead.from_order(order)


@app.post("/orders/{order_id}/toggle-served")
def toggle_order_served(
    order_id: int,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> models.OrderRead:
    order = orders.toggle_served(session, order_id, venue_id=current_user.venue_id, propagator=propagator)
    return models.OrderRead.from_order(order)


@app.delete("/orders/{order_id}")
def delete_order(
    order_id: int,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> dict:
    orders.delete_order(session, order_id, venue_id=current_user.venue_id, propagator=propagator)
    return {"status": "deleted", "id": order_id}


@app.post("/orders/bulk-delete")
def bulk_delete_orders(
    request: models.BulkDeleteRequest,
    current_user: CurrentUser,
    propagator: Propagator,
    session: Session = Depends(get_session)
) -> dict:
    result = orders.delete_orders(session, request.order_ids, venue_id=current_user.venue_id, propagator=propagator)
    if result.failed:
        raise PartialBulkFailure(deleted=result.deleted, failed=result.failed)
    return {"status": "deleted", "deleted": result.deleted, "failed": []}


# ============ INTERNAL VALIDATION (for ws-bridge) ============

@app.get("/internal/validate-table/{table_token}")
def validate_table_token(
    table_token: str,
    session: Session = Depends(get_session)
) -> dict:
    """Internal endpoint for ws-bridge to validate table tokens."""
    table = identity.resolve_table(session, table_token)
    active = identity.find_active_session(session, table.id)
    return {
        "table_id": table.id,
        "venue_id": table.venue_id,
        "session_id": active.id if active else None,
        "valid": True
    }


# ============ GUEST (public, by table token) ============

def _public_session(record: models.TableSession, table: models.TableNode) -> models.SessionPublic:
    return models.SessionPublic(
        id=record.id,
        table_node_id=table.id,
        table_label=table.label,
        status=record.status,
        pin_required=record.pin_required,
        started_at=record.started_at,
    )


def _guest_session_id(
    session: Session,
    table: models.TableNode,
    guest_token: str | None,
) -> str:
    """The session this guest may act in; raises if they must verify again."""
    active = identity.find_active_session(session, table.id)
    if active is None:
        raise SessionInactive(f"Table {table.label} has no active session")
    if guest_token:
        claims = sessions.decode_guest_token(guest_token, table.id)
        if claims["sid"] != active.id:
            raise SessionConflict("Session has ended, verify the new PIN", expected_session_id=claims["sid"])
        return active.id
    if active.pin_required:
        raise SessionConflict("PIN verification required")
    return active.id


@app.get("/t/{table_token}/menu")
def get_menu(
    table_token: str,
    session: Session = Depends(get_session)
) -> dict:
    """Public endpoint - available menu items for a table's venue."""
    table = identity.resolve_table(session, table_token)
    items = session.exec(
        select(models.MenuItem).where(
            models.MenuItem.venue_id == table.venue_id,
            models.MenuItem.is_available == True,  # noqa: E712
        )
    ).all()
    return {
        "table_label": table.label,
        "items": [{"id": item.id, "name": item.name, "price_cents": item.price_cents} for item in items],
    }


@app.post("/t/{table_token}/session")
def resolve_guest_session(
    table_token: str,
    propagator: Propagator,
    x_device_id: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session)
) -> dict:
    """Public endpoint - join (or open) the table's active session."""
    table = identity.resolve_table(session, table_token)
    device_id = identity.normalize_device_id(x_device_id)
    record = sessions.ensure_active_session(session, table.id, propagator=propagator)
    return {
        "session": _public_session(record, table).model_dump(mode="json"),
        "device_id": device_id,
        "guest_token": None if record.pin_required else sessions.issue_guest_token(record, device_id),
    }


@app.post("/t/{table_token}/verify")
def verify_guest_pin(
    table_token: str,
    pin_data: models.PinVerify,
    x_device_id: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session)
) -> dict:
    """Public endpoint - exchange the table PIN for a guest token. Fails closed."""
    deadline = guest_deadline()
    table = identity.resolve_table(session, table_token)
    device_id = identity.normalize_device_id(x_device_id)
    verified = sessions.verify_session(session, table.id, pin_data.pin)
    if verified and time.monotonic() >= deadline:
        logger.warning(f"PIN verification timed out for table {table.id}")
        verified = False

    active = identity.find_active_session(session, table.id) if verified else None
    if not verified or active is None:
        raise HTTPException(status_code=401, detail="Invalid PIN")

    return {
        "verified": True,
        "session_id": active.id,
        "device_id": device_id,
        "guest_token": sessions.issue_guest_token(active, device_id),
    }


@app.get("/t/{table_token}/orders")
def get_guest_orders(
    table_token: str,
    x_device_id: Annotated[str | None, Header()] = None,
    x_guest_token: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session)
) -> dict:
    """Public endpoint - this device's orders and everyone else's at the table."""
    table = identity.resolve_table(session, table_token)
    session_id = _guest_session_id(session, table, x_guest_token)
    device_id = identity.normalize_device_id(x_device_id) if x_device_id else None

    session_orders = orders.list_session_orders(session, session_id)
    split = attribution.partition(session_orders, device_id)
    return {
        "session_id": session_id,
        "mine": [models.OrderRead.from_order(o) for o in split.mine],
        "group": [models.OrderRead.from_order(o) for o in split.group],
        "participants": sorted(attribution.participants(session_orders)),
        "total_cents": attribution.running_total(session_orders),
    }


@app.post("/t/{table_token}/orders")
def place_guest_order(
    table_token: str,
    order_data: models.OrderCreate,
    propagator: Propagator,
    x_device_id: Annotated[str | None, Header()] = None,
    x_guest_token: Annotated[str | None, Header()] = None,
    session: Session = Depends(get_session)
) -> dict:
    """
    Public endpoint - place one order row per line item.

    If the deadline passes before the first row is written the guest gets a
    503 and nothing is stored. If it passes mid-batch the rows already written
    come back with a 202 so the guest can see what was placed before retrying.
    """
    deadline = guest_deadline()
    table = identity.resolve_table(session, table_token)
    session_id = _guest_session_id(session, table, x_guest_token)
    if order_data.session_id is not None and order_data.session_id != session_id:
        raise SessionConflict("Session has ended, verify the new PIN", expected_session_id=order_data.session_id)
    device_id = identity.normalize_device_id(x_device_id)

    context = orders.SessionContext(
        table_node_id=table.id,
        device_id=device_id,
        session_id=session_id,
        customer_name=order_data.customer_name,
    )
    try:
        created = orders.place_order(
            session, context, order_data.items, propagator=propagator, deadline=deadline
        )
    except DeadlineExceeded as exc:
        logger.warning(f"Order placement timed out for table {table.id} after {len(exc.committed)} row(s)")
        if not exc.committed:
            raise HTTPException(status_code=503, detail="Order placement timed out, try again")
        return JSONResponse(
            status_code=202,
            content={
                "status": "partial",
                "session_id": session_id,
                "device_id": device_id,
                "orders": [models.OrderRead.from_order(o).model_dump(mode="json") for o in exc.committed],
            },
        )

    return {
        "status": "created",
        "session_id": session_id,
        "device_id": device_id,
        "orders": [models.OrderRead.from_order(o) for o in created],
    }
