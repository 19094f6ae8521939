"""
Session Manager

Owns the lifecycle of a table session:
- ensure an active session (safe under concurrent first access)
- PIN verification, rotation and requirement toggle
- terminate-and-reset on table turnover, plain end, manual start
- short-lived guest tokens bound to a verified session

At most one active session per table is enforced by the UNIQUE
`active_table_node_id` column, not by application locks.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import identity, models, orders
from .errors import SessionConflict, SessionNotFound, ValidationError
from .propagation import ChangeKind, ChangePropagator, get_propagator
from .settings import settings

logger = logging.getLogger(__name__)

GUEST_TOKEN_TYPE = "guest"


def generate_pin(length: int | None = None, exclude: str | None = None) -> str:
    length = length or settings.pin_length
    while True:
        pin = "".join(secrets.choice("0123456789") for _ in range(length))
        if pin != exclude:
            return pin


def _new_session(table: models.TableNode, exclude_pin: str | None = None) -> models.TableSession:
    return models.TableSession(
        table_node_id=table.id,
        venue_id=table.venue_id,
        verification_code=generate_pin(exclude=exclude_pin),
        pin_required=table.pin_required_default,
        active_table_node_id=table.id,
    )


def _get_active(session: Session, session_id: str) -> models.TableSession:
    record = identity.get_session_record(session, session_id)
    if record.status != models.SessionStatus.active:
        raise SessionNotFound(f"Session {session_id} is not active", session_id=session_id)
    return record


def ensure_active_session(
    session: Session,
    table_node_id: int,
    propagator: ChangePropagator | None = None,
) -> models.TableSession:
    """Return the table's active session, creating it on first access."""
    existing = identity.find_active_session(session, table_node_id)
    if existing:
        return existing

    table = identity.get_table(session, table_node_id)
    record = _new_session(table)
    session.add(record)
    try:
        session.commit()
    except IntegrityError:
        # Another device created it first; converge on the winner
        session.rollback()
        winner = identity.find_active_session(session, table_node_id)
        if winner is None:
            raise
        logger.info(f"Table {table_node_id}: concurrent session creation resolved to {winner.id}")
        return winner

    session.refresh(record)
    logger.info(f"Table {table_node_id}: started session {record.id}")
    (propagator or get_propagator()).publish_session_change(record, ChangeKind.created)
    return record


def validate_pin_format(pin: str | None) -> str:
    if pin is None:
        raise ValidationError("PIN is required")
    pin = pin.strip()
    if len(pin) != settings.pin_length or not pin.isdigit():
        raise ValidationError(f"PIN must be {settings.pin_length} digits")
    return pin


def verify_session(session: Session, table_node_id: int, supplied_pin: str | None) -> bool:
    """Check a guest's PIN against the table's active session. Read-only, no lockout."""
    record = identity.find_active_session(session, table_node_id)
    if record is None:
        return False
    if not record.pin_required:
        return True
    pin = validate_pin_format(supplied_pin)
    return secrets.compare_digest(pin, record.verification_code)


def rotate_pin(session: Session, session_id: str, propagator: ChangePropagator | None = None) -> str:
    record = _get_active(session, session_id)
    record.verification_code = generate_pin(exclude=record.verification_code)
    record.updated_at = models.utcnow()
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"Session {session_id}: PIN rotated")
    (propagator or get_propagator()).publish_session_change(record, ChangeKind.updated)
    return record.verification_code


def toggle_pin_requirement(
    session: Session,
    session_id: str,
    required: bool,
    propagator: ChangePropagator | None = None,
) -> models.TableSession:
    record = _get_active(session, session_id)
    record.pin_required = required
    record.updated_at = models.utcnow()
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"Session {session_id}: pin_required={required}")
    (propagator or get_propagator()).publish_session_change(record, ChangeKind.updated)
    return record


def _end(record: models.TableSession) -> None:
    now = models.utcnow()
    record.status = models.SessionStatus.ended
    record.ended_at = now
    record.updated_at = now
    record.active_table_node_id = None


def terminate_and_reset(
    session: Session,
    session_id: str,
    propagator: ChangePropagator | None = None,
) -> models.TableSession:
    """End the session and start its replacement in a single transaction."""
    old = _get_active(session, session_id)
    table = identity.get_table(session, old.table_node_id)
    old_pin = old.verification_code

    _end(old)
    session.add(old)
    # Release the unique guard before the replacement row claims it
    session.flush()
    new = _new_session(table, exclude_pin=old_pin)
    session.add(new)
    session.commit()
    session.refresh(old)
    session.refresh(new)

    logger.info(f"Table {table.id}: session {old.id} replaced by {new.id}")
    propagator = propagator or get_propagator()
    propagator.publish_session_change(old, ChangeKind.updated)
    propagator.publish_session_change(new, ChangeKind.created)
    return new


def end_session(
    session: Session,
    session_id: str,
    propagator: ChangePropagator | None = None,
) -> models.TableSession:
    record = _get_active(session, session_id)
    _end(record)
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"Session {session_id}: ended")
    (propagator or get_propagator()).publish_session_change(record, ChangeKind.updated)
    return record


def start_manual_session(
    session: Session,
    table_node_id: int,
    propagator: ChangePropagator | None = None,
) -> models.TableSession:
    """Staff opens a table by hand. Refuses if the table is already occupied."""
    existing = identity.find_active_session(session, table_node_id)
    if existing:
        raise SessionConflict(
            f"Table {table_node_id} already has an active session",
            active_session_id=existing.id,
        )
    return ensure_active_session(session, table_node_id, propagator=propagator)


def purge_table(
    session: Session,
    table_node_id: int,
    venue_id: int | None = None,
    propagator: ChangePropagator | None = None,
) -> None:
    """Delete a table together with its session history and orders."""
    table = identity.get_table(session, table_node_id, venue_id)

    order_payloads = []
    for order in session.exec(select(models.Order).where(models.Order.table_node_id == table.id)).all():
        order_payloads.append(orders.order_snapshot(order))
        session.delete(order)
    session.flush()

    session_payloads = []
    for record in session.exec(
        select(models.TableSession).where(models.TableSession.table_node_id == table.id)
    ).all():
        if record.status == models.SessionStatus.active:
            _end(record)
        session_payloads.append(record.model_dump(mode="json"))
        session.delete(record)
    session.flush()

    session.delete(table)
    session.commit()
    logger.info(
        f"Table {table_node_id} purged with {len(session_payloads)} session(s) and {len(order_payloads)} order(s)"
    )

    propagator = propagator or get_propagator()
    for payload in order_payloads:
        propagator.publish_order_change(payload, ChangeKind.deleted)
    for payload in session_payloads:
        propagator.publish_session_change(payload, ChangeKind.deleted)


def list_active_sessions(session: Session, venue_id: int) -> list[models.TableSession]:
    return list(session.exec(
        select(models.TableSession).where(
            models.TableSession.venue_id == venue_id,
            models.TableSession.status == models.SessionStatus.active,
        ).order_by(models.TableSession.started_at.desc())
    ).all())


# ============ GUEST TOKENS ============

def issue_guest_token(record: models.TableSession, device_id: str, expires_delta: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.guest_token_expire_minutes))
    to_encode = {
        "type": GUEST_TOKEN_TYPE,
        "sid": record.id,
        "tid": record.table_node_id,
        "dev": device_id,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_guest_token(token: str, table_node_id: int) -> dict:
    """Decode a guest token; any invalid or foreign token means "verify again"."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise SessionConflict("Guest token is invalid or expired")
    if payload.get("type") != GUEST_TOKEN_TYPE or payload.get("tid") != table_node_id:
        raise SessionConflict("Guest token does not belong to this table")
    return payload
