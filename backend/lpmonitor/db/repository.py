from datetime import datetime
from typing import Optional
from sqlalchemy import update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from lpmonitor.db.engine import get_session
from lpmonitor.db.models import (
    Position,
    TrackedWallet,
    AlertEvent,
    AlertDelivery,
    UserAlertPreference,
    Recipient,
)


# ============ Positions ============

def get_position(position_ref: str) -> Position | None:
    with get_session() as session:
        return session.exec(select(Position).where(Position.position_ref == position_ref)).first()


def list_positions(wallet_address: str = None, active_only: bool = True) -> list[Position]:
    with get_session() as session:
        stmt = select(Position)
        if active_only:
            stmt = stmt.where(Position.is_active == True)
        if wallet_address:
            stmt = stmt.where(Position.wallet_address == wallet_address)
        return list(session.exec(stmt.order_by(Position.id)).all())


def count_active_positions() -> int:
    with get_session() as session:
        return session.exec(select(func.count()).select_from(Position).where(Position.is_active == True)).one()


def list_positions_due(stale_before: datetime, wallets: list[str] = ()) -> list[Position]:
    """Active positions last checked before `stale_before`, plus all active positions of `wallets`."""
    with get_session() as session:
        condition = Position.last_checked_at < stale_before
        if wallets:
            condition = or_(condition, Position.wallet_address.in_(list(wallets)))
        stmt = select(Position).where(Position.is_active == True, condition).order_by(Position.last_checked_at)
        return list(session.exec(stmt).all())


def write_position(
    values: dict,
    expected_version: Optional[int],
    events: list[dict],
    expected_active: Optional[bool] = None,
) -> list[int] | None:
    """
    Compare-and-set write of a position snapshot plus its alert events, in one
    transaction. `expected_version=None` inserts a new row.
    With `expected_active`, a concurrent (de)activation also loses the race.
    Returns the ids of newly inserted events, or None if another writer got
    there first (version moved, or the row was inserted concurrently).
    """
    with get_session() as session:
        try:
            if expected_version is None:
                session.add(Position(**values))
            else:
                stmt = update(Position).where(
                    Position.position_ref == values["position_ref"],
                    Position.version == expected_version,
                )
                if expected_active is not None:
                    stmt = stmt.where(Position.is_active == expected_active)
                result = session.exec(stmt.values(**values))
                if result.rowcount != 1:
                    session.rollback()
                    return None

            inserted = []
            for event in events:
                existing = session.exec(
                    select(AlertEvent).where(
                        AlertEvent.position_ref == event["position_ref"],
                        AlertEvent.kind == event["kind"],
                        AlertEvent.epoch == event["epoch"],
                    )
                ).first()
                if existing:
                    continue
                record = AlertEvent(**event)
                session.add(record)
                inserted.append(record)

            session.flush()
            event_ids = [record.id for record in inserted]
            session.commit()
            return event_ids
        except IntegrityError:
            session.rollback()
            return None


def mark_position_unknown(position_ref: str) -> bool:
    """Record a failed fetch. Version, last_checked_at and evaluator state stay as they are."""
    with get_session() as session:
        result = session.exec(
            update(Position)
            .where(Position.position_ref == position_ref)
            .values(last_known_status="unknown", fetch_failures=Position.fetch_failures + 1)
        )
        session.commit()
        return result.rowcount == 1


def deactivate_position(position_ref: str, version: Optional[int] = None) -> bool:
    """Mark a withdrawn position inactive. With `version`, only if it is newer than the stored one."""
    with get_session() as session:
        stmt = update(Position).where(Position.position_ref == position_ref, Position.is_active == True)
        values = {"is_active": False, "last_checked_at": datetime.utcnow()}
        if version is not None:
            stmt = stmt.where(Position.version < version)
            values["version"] = version
        result = session.exec(stmt.values(**values))
        session.commit()
        return result.rowcount == 1


# ============ Tracked Wallets ============

def get_tracked_wallet(wallet_address: str) -> TrackedWallet | None:
    with get_session() as session:
        return session.get(TrackedWallet, wallet_address)


def upsert_tracked_wallet(wallet_address: str, user_id: str) -> TrackedWallet:
    with get_session() as session:
        wallet = session.get(TrackedWallet, wallet_address)
        if wallet:
            wallet.user_id = user_id
            wallet.is_active = True
        else:
            wallet = TrackedWallet(wallet_address=wallet_address, user_id=user_id, tracked_at=datetime.utcnow())
            session.add(wallet)
        session.commit()
        session.refresh(wallet)
        return wallet


def deactivate_wallet(wallet_address: str) -> int:
    """Stop tracking a wallet; returns the number of positions deactivated. Alert history is kept."""
    with get_session() as session:
        wallet = session.get(TrackedWallet, wallet_address)
        if not wallet:
            return 0
        wallet.is_active = False
        wallet.invalidated_at = None
        result = session.exec(
            update(Position)
            .where(Position.wallet_address == wallet_address, Position.is_active == True)
            .values(is_active=False)
        )
        session.commit()
        return result.rowcount


def mark_wallet_invalidated(wallet_address: str, ts: datetime = None) -> bool:
    with get_session() as session:
        wallet = session.get(TrackedWallet, wallet_address)
        if not wallet or not wallet.is_active:
            return False
        wallet.invalidated_at = ts or datetime.utcnow()
        session.commit()
        return True


def get_invalidated_wallets() -> list[TrackedWallet]:
    with get_session() as session:
        stmt = select(TrackedWallet).where(TrackedWallet.is_active == True, TrackedWallet.invalidated_at != None)
        return list(session.exec(stmt).all())


def clear_wallet_invalidation(wallet_addresses: list[str], picked_up_at: datetime):
    """Clear markers set before `picked_up_at`; a newer invalidate() survives for the next cycle."""
    if not wallet_addresses:
        return
    with get_session() as session:
        session.exec(
            update(TrackedWallet)
            .where(
                TrackedWallet.wallet_address.in_(wallet_addresses),
                TrackedWallet.invalidated_at <= picked_up_at,
            )
            .values(invalidated_at=None)
        )
        session.commit()


# ============ Alert Events ============

def get_alert_event(event_id: int) -> AlertEvent | None:
    with get_session() as session:
        return session.get(AlertEvent, event_id)


def get_recent_events(limit: int = 50) -> list[AlertEvent]:
    with get_session() as session:
        stmt = select(AlertEvent).order_by(AlertEvent.detected_at.desc(), AlertEvent.id.desc()).limit(limit)
        return list(session.exec(stmt).all())


def get_due_event_ids(now: datetime, limit: int = 100) -> list[int]:
    """Open events that were never attempted or have a channel due for retry."""
    with get_session() as session:
        untouched = (
            select(AlertEvent.id)
            .where(AlertEvent.closed_at == None)
            .where(~AlertEvent.id.in_(select(AlertDelivery.event_id)))
        )
        due = (
            select(AlertDelivery.event_id)
            .join(AlertEvent, AlertEvent.id == AlertDelivery.event_id)
            .where(
                AlertEvent.closed_at == None,
                AlertDelivery.delivered_at == None,
                AlertDelivery.abandoned_at == None,
                AlertDelivery.next_attempt_at <= now,
            )
        )
        ids = set(session.exec(untouched).all()) | set(session.exec(due).all())
        return sorted(ids)[:limit]


def last_delivered_at(position_ref: str, kind: str, exclude_event_id: int = None) -> datetime | None:
    with get_session() as session:
        stmt = select(func.max(AlertEvent.delivered_at)).where(
            AlertEvent.position_ref == position_ref,
            AlertEvent.kind == kind,
            AlertEvent.delivered_at != None,
        )
        if exclude_event_id is not None:
            stmt = stmt.where(AlertEvent.id != exclude_event_id)
        return session.exec(stmt).one()


def close_event(event_id: int, reason: str = None, ts: datetime = None):
    with get_session() as session:
        event = session.get(AlertEvent, event_id)
        if event and event.closed_at is None:
            event.closed_at = ts or datetime.utcnow()
            event.suppressed_reason = reason
            session.commit()


def mark_event_delivered(event_id: int, ts: datetime = None) -> bool:
    """Set delivered_at once. Returns False if it was already set."""
    with get_session() as session:
        result = session.exec(
            update(AlertEvent)
            .where(AlertEvent.id == event_id, AlertEvent.delivered_at == None)
            .values(delivered_at=ts or datetime.utcnow())
        )
        session.commit()
        return result.rowcount == 1


def ensure_deliveries(event_id: int, channels: list[str], ts: datetime = None) -> list[AlertDelivery]:
    with get_session() as session:
        existing = {
            d.channel: d
            for d in session.exec(select(AlertDelivery).where(AlertDelivery.event_id == event_id)).all()
        }
        for channel in channels:
            if channel not in existing:
                delivery = AlertDelivery(event_id=event_id, channel=channel, next_attempt_at=ts or datetime.utcnow())
                session.add(delivery)
                existing[channel] = delivery
        session.commit()
        for delivery in existing.values():
            session.refresh(delivery)
        return list(existing.values())


def get_deliveries(event_id: int) -> list[AlertDelivery]:
    with get_session() as session:
        return list(session.exec(select(AlertDelivery).where(AlertDelivery.event_id == event_id)).all())


def record_delivery_success(delivery_id: int, ts: datetime = None):
    with get_session() as session:
        delivery = session.get(AlertDelivery, delivery_id)
        delivery.attempts += 1
        delivery.delivered_at = ts or datetime.utcnow()
        delivery.last_error = None
        session.commit()


def record_delivery_failure(
    delivery_id: int,
    error: str,
    next_attempt_at: datetime,
    abandon: bool = False,
    ts: datetime = None,
) -> AlertDelivery:
    with get_session() as session:
        delivery = session.get(AlertDelivery, delivery_id)
        delivery.attempts += 1
        delivery.last_error = error[:500]
        delivery.next_attempt_at = next_attempt_at
        if abandon:
            delivery.abandoned_at = ts or datetime.utcnow()
        session.commit()
        session.refresh(delivery)
        return delivery


def purge_events(before: datetime) -> int:
    """Delete events (and their delivery rows) detected before `before`."""
    with get_session() as session:
        old_ids = select(AlertEvent.id).where(AlertEvent.detected_at < before)
        session.exec(delete(AlertDelivery).where(AlertDelivery.event_id.in_(old_ids)))
        result = session.exec(delete(AlertEvent).where(AlertEvent.detected_at < before))
        session.commit()
        return result.rowcount


# ============ Preferences & Recipients ============

def get_preference(user_id: str) -> UserAlertPreference:
    """Stored preference, or defaults when the user never saved any."""
    with get_session() as session:
        return session.get(UserAlertPreference, user_id) or UserAlertPreference(user_id=user_id)


def upsert_preference(user_id: str, **fields) -> UserAlertPreference:
    with get_session() as session:
        pref = session.get(UserAlertPreference, user_id)
        if not pref:
            pref = UserAlertPreference(user_id=user_id)
            session.add(pref)
        for key, value in fields.items():
            setattr(pref, key, value)
        pref.updated_at = datetime.utcnow()
        session.commit()
        session.refresh(pref)
        return pref


def list_summary_user_ids() -> list[str]:
    with get_session() as session:
        stmt = select(UserAlertPreference.user_id).where(UserAlertPreference.daily_summary == True)
        return list(session.exec(stmt).all())


def get_recipient(user_id: str) -> Recipient | None:
    with get_session() as session:
        return session.get(Recipient, user_id)


def upsert_recipient(user_id: str, **fields) -> Recipient:
    with get_session() as session:
        recipient = session.get(Recipient, user_id)
        if not recipient:
            recipient = Recipient(user_id=user_id)
            session.add(recipient)
        for key, value in fields.items():
            setattr(recipient, key, value)
        recipient.updated_at = datetime.utcnow()
        session.commit()
        session.refresh(recipient)
        return recipient


def list_positions_for_user(user_id: str) -> list[Position]:
    with get_session() as session:
        stmt = (
            select(Position)
            .join(TrackedWallet, TrackedWallet.wallet_address == Position.wallet_address)
            .where(
                TrackedWallet.user_id == user_id,
                TrackedWallet.is_active == True,
                Position.is_active == True,
            )
            .order_by(Position.id)
        )
        return list(session.exec(stmt).all())


def get_last_poll_check() -> datetime | None:
    """Most recent successful poll write, used to rebuild MonitoringStatus on start."""
    with get_session() as session:
        return session.exec(select(func.max(Position.last_checked_at)).where(Position.source == "poll")).one()
