"""
Identity lookups: table token -> table, table -> active session, and the
per-browser device identity used for order attribution. No business rules.
"""
import re
from uuid import uuid4

from sqlmodel import Session, select

from . import models
from .errors import SessionNotFound, TableNotFound, ValidationError

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def resolve_table(session: Session, token: str) -> models.TableNode:
    table = session.exec(select(models.TableNode).where(models.TableNode.token == token)).first()
    if not table:
        raise TableNotFound(token)
    return table


def get_table(session: Session, table_node_id: int, venue_id: int | None = None) -> models.TableNode:
    table = session.get(models.TableNode, table_node_id)
    if not table or (venue_id is not None and table.venue_id != venue_id):
        raise TableNotFound(table_node_id)
    return table


def find_active_session(session: Session, table_node_id: int) -> models.TableSession | None:
    return session.exec(
        select(models.TableSession).where(
            models.TableSession.table_node_id == table_node_id,
            models.TableSession.status == models.SessionStatus.active,
        )
    ).first()


def get_session_record(session: Session, session_id: str) -> models.TableSession:
    record = session.get(models.TableSession, session_id)
    if not record:
        raise SessionNotFound(f"Session {session_id} not found", session_id=session_id)
    return record


def normalize_device_id(raw: str | None) -> str:
    """Return a usable device id, minting one on the device's first order."""
    if raw is None or not raw.strip():
        return uuid4().hex
    device_id = raw.strip()
    if not DEVICE_ID_PATTERN.match(device_id):
        raise ValidationError("Device id must be 1-64 characters of letters, digits, '-' or '_'")
    return device_id
