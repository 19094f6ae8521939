"""
Session lifecycle: one active session per table, PIN handling and turnover.
"""
import pytest
from sqlmodel import select

from tableside import identity, models, orders, sessions
from tableside.errors import SessionConflict, SessionNotFound, ValidationError


def active_sessions(db, table_id):
    return db.exec(
        select(models.TableSession).where(
            models.TableSession.table_node_id == table_id,
            models.TableSession.status == models.SessionStatus.active,
        )
    ).all()


def test_ensure_creates_then_reuses(db, table, propagator):
    first = sessions.ensure_active_session(db, table.id, propagator=propagator)
    second = sessions.ensure_active_session(db, table.id, propagator=propagator)

    assert first.id == second.id
    assert first.status == models.SessionStatus.active
    assert first.pin_required is True
    assert len(first.verification_code) == 4 and first.verification_code.isdigit()
    assert len(active_sessions(db, table.id)) == 1
    # Only the creation is propagated
    assert len(propagator.events_for(f"venue:{table.venue_id}")) == 1


def test_concurrent_first_access_converges(db, table, propagator, monkeypatch):
    winner = sessions.ensure_active_session(db, table.id, propagator=propagator)

    # The second device read "no session" just before the winner committed
    real_lookup = identity.find_active_session
    calls = []

    def stale_lookup(session, table_node_id):
        calls.append(table_node_id)
        if len(calls) == 1:
            return None
        return real_lookup(session, table_node_id)

    monkeypatch.setattr(identity, "find_active_session", stale_lookup)
    loser = sessions.ensure_active_session(db, table.id, propagator=propagator)

    assert loser.id == winner.id
    assert len(calls) == 2
    monkeypatch.undo()
    assert len(active_sessions(db, table.id)) == 1


def test_pin_requirement_follows_table_default(db, venue, propagator):
    open_table = models.TableNode(label="Bar 1", venue_id=venue.id, pin_required_default=False)
    db.add(open_table)
    db.commit()
    db.refresh(open_table)

    record = sessions.ensure_active_session(db, open_table.id, propagator=propagator)

    assert record.pin_required is False
    assert sessions.verify_session(db, open_table.id, None) is True


def test_verify_session(db, table, propagator):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)
    wrong = "0000" if record.verification_code != "0000" else "1111"

    assert sessions.verify_session(db, table.id, record.verification_code) is True
    assert sessions.verify_session(db, table.id, wrong) is False
    # No lockout: the right PIN still works after a failure
    assert sessions.verify_session(db, table.id, record.verification_code) is True


@pytest.mark.parametrize("pin", ["12", "abcd", "12345", "", None])
def test_verify_rejects_malformed_pin(db, table, propagator, pin):
    sessions.ensure_active_session(db, table.id, propagator=propagator)
    with pytest.raises(ValidationError):
        sessions.verify_session(db, table.id, pin)


def test_verify_without_active_session_is_false(db, table):
    assert sessions.verify_session(db, table.id, "1234") is False


def test_rotate_pin(db, table, propagator):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)
    old_pin = record.verification_code
    session_id = record.id

    new_pin = sessions.rotate_pin(db, session_id, propagator=propagator)

    assert new_pin != old_pin
    assert sessions.verify_session(db, table.id, old_pin) is False
    assert sessions.verify_session(db, table.id, new_pin) is True
    assert identity.find_active_session(db, table.id).id == session_id


def test_toggle_pin_requirement(db, table, propagator):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)

    updated = sessions.toggle_pin_requirement(db, record.id, False, propagator=propagator)
    assert updated.pin_required is False
    assert sessions.verify_session(db, table.id, None) is True

    updated = sessions.toggle_pin_requirement(db, record.id, True, propagator=propagator)
    assert updated.pin_required is True


def test_terminate_and_reset(db, table, propagator):
    old = sessions.ensure_active_session(db, table.id, propagator=propagator)
    old_id, old_pin = old.id, old.verification_code

    new = sessions.terminate_and_reset(db, old_id, propagator=propagator)

    ended = db.get(models.TableSession, old_id)
    assert ended.status == models.SessionStatus.ended
    assert ended.ended_at is not None
    assert ended.active_table_node_id is None
    assert new.id != old_id
    assert new.verification_code != old_pin
    assert new.status == models.SessionStatus.active
    assert len(active_sessions(db, table.id)) == 1
    assert sessions.ensure_active_session(db, table.id, propagator=propagator).id == new.id
    assert sessions.verify_session(db, table.id, old_pin) is False

    # Guests of the old session learn it ended; staff see both changes
    assert [e.kind.value for e in propagator.events_for(f"session:{old_id}")][-1] == "updated"
    assert propagator.events_for(f"session:{new.id}")[0].kind.value == "created"


def test_end_session_leaves_table_free(db, table, propagator):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)

    ended = sessions.end_session(db, record.id, propagator=propagator)

    assert ended.status == models.SessionStatus.ended
    assert identity.find_active_session(db, table.id) is None
    # Ended sessions are kept for history
    assert db.get(models.TableSession, record.id) is not None


@pytest.mark.parametrize("operation", [
    lambda db, sid, p: sessions.rotate_pin(db, sid, propagator=p),
    lambda db, sid, p: sessions.toggle_pin_requirement(db, sid, False, propagator=p),
    lambda db, sid, p: sessions.terminate_and_reset(db, sid, propagator=p),
    lambda db, sid, p: sessions.end_session(db, sid, propagator=p),
])
def test_operations_on_ended_session_raise(db, table, propagator, operation):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)
    sessions.end_session(db, record.id, propagator=propagator)

    with pytest.raises(SessionNotFound):
        operation(db, record.id, propagator)


def test_unknown_session_raises(db, propagator):
    with pytest.raises(SessionNotFound):
        sessions.rotate_pin(db, "does-not-exist", propagator=propagator)


def test_start_manual_session(db, table, propagator):
    record = sessions.start_manual_session(db, table.id, propagator=propagator)
    assert record.status == models.SessionStatus.active

    with pytest.raises(SessionConflict):
        sessions.start_manual_session(db, table.id, propagator=propagator)


def test_list_active_sessions(db, venue, table, propagator):
    other = models.TableNode(label="T8", venue_id=venue.id)
    db.add(other)
    db.commit()
    db.refresh(other)
    sessions.ensure_active_session(db, table.id, propagator=propagator)
    ended = sessions.ensure_active_session(db, other.id, propagator=propagator)
    sessions.end_session(db, ended.id, propagator=propagator)

    active = sessions.list_active_sessions(db, venue.id)

    assert [s.table_node_id for s in active] == [table.id]


def test_guest_token_round_trip(db, table, propagator):
    record = sessions.ensure_active_session(db, table.id, propagator=propagator)
    token = sessions.issue_guest_token(record, "device-a")

    claims = sessions.decode_guest_token(token, table.id)

    assert claims["sid"] == record.id
    assert claims["dev"] == "device-a"
    with pytest.raises(SessionConflict):
        sessions.decode_guest_token(token, table.id + 1)
    with pytest.raises(SessionConflict):
        sessions.decode_guest_token("not-a-token", table.id)


def test_purge_table_removes_history_and_announces_it(db, table, menu, propagator):
    ended = sessions.ensure_active_session(db, table.id, propagator=propagator)
    ended_id = ended.id
    active = sessions.terminate_and_reset(db, ended_id, propagator=propagator)
    active_id = active.id
    placed = orders.place_order(
        db, orders.SessionContext(table_node_id=table.id, device_id="A"),
        [models.OrderLineCreate(item_id=menu[0].id)], propagator=propagator,
    )[0]
    order_id, table_id, venue_id = placed.id, table.id, table.venue_id

    sessions.purge_table(db, table_id, propagator=propagator)

    assert db.get(models.TableNode, table_id) is None
    assert db.exec(select(models.TableSession).where(models.TableSession.table_node_id == table_id)).all() == []
    assert db.exec(select(models.Order).where(models.Order.table_node_id == table_id)).all() == []

    deleted = [e for e in propagator.events_for(f"venue:{venue_id}") if e.kind.value == "deleted"]
    assert {(e.entity_type.value, e.entity_id) for e in deleted} == {
        ("order", str(order_id)), ("session", ended_id), ("session", active_id),
    }
    guest_event = propagator.events_for(f"session:{active_id}")[-1]
    assert guest_event.kind.value == "deleted"
    assert guest_event.payload["status"] == "ended"
    assert "verification_code" not in guest_event.payload
