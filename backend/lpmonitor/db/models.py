from datetime import datetime
from typing import Optional
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field


class Position(SQLModel, table=True):
    """
    Last-known snapshot of one LP position.
    `version` is the chain slot the state was observed at; writes are
    compare-and-set on it. Rows are deactivated, never deleted.
    """
    __tablename__ = "positions"

    id: Optional[int] = Field(default=None, primary_key=True)
    position_ref: str = Field(index=True, unique=True)
    wallet_address: str = Field(index=True)
    pool_address: str
    dex: str = Field(default="meteora_dlmm")
    lower_bound: int
    upper_bound: int
    active_bound: int
    active_price: Optional[float] = Field(default=None)
    liquidity_x: float = Field(default=0.0)
    liquidity_y: float = Field(default=0.0)
    fees_x: float = Field(default=0.0)
    fees_y: float = Field(default=0.0)
    is_active: bool = Field(default=True, index=True)
    last_checked_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    last_known_status: str = Field(default="unknown")
    version: int = Field(default=0)
    source: str = Field(default="poll")
    fetch_failures: int = Field(default=0)

    # Risk evaluator counters
    settled_status: Optional[str] = Field(default=None)
    episode: int = Field(default=0)
    episode_started_at: Optional[datetime] = Field(default=None)
    rebalance_alerted_episode: Optional[int] = Field(default=None)
    price_anchor: Optional[float] = Field(default=None)
    price_alerted_at: Optional[datetime] = Field(default=None)


class TrackedWallet(SQLModel, table=True):
    __tablename__ = "tracked_wallets"

    wallet_address: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    is_active: bool = Field(default=True)
    tracked_at: datetime = Field(default_factory=datetime.utcnow)
    invalidated_at: Optional[datetime] = Field(default=None)


class AlertEvent(SQLModel, table=True):
    __tablename__ = "alert_events"
    __table_args__ = (UniqueConstraint("position_ref", "kind", "epoch", name="uq_alert_transition"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    position_ref: str = Field(index=True)
    wallet_address: str = Field(index=True)
    user_id: str = Field(index=True)
    kind: str = Field(index=True)
    epoch: int
    detected_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    delivered_at: Optional[datetime] = Field(default=None)
    closed_at: Optional[datetime] = Field(default=None, index=True)
    suppressed_reason: Optional[str] = Field(default=None)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))


class AlertDelivery(SQLModel, table=True):
    """Per-channel delivery state of one AlertEvent."""
    __tablename__ = "alert_deliveries"
    __table_args__ = (UniqueConstraint("event_id", "channel", name="uq_delivery_channel"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: int = Field(index=True, foreign_key="alert_events.id")
    channel: str
    attempts: int = Field(default=0)
    delivered_at: Optional[datetime] = Field(default=None)
    abandoned_at: Optional[datetime] = Field(default=None)
    next_attempt_at: datetime = Field(default_factory=datetime.utcnow)
    last_error: Optional[str] = Field(default=None)


class UserAlertPreference(SQLModel, table=True):
    __tablename__ = "user_alert_preferences"

    user_id: str = Field(primary_key=True)
    alert_on_out_of_range: bool = Field(default=True)
    alert_on_back_in_range: bool = Field(default=True)
    alert_on_price_move: bool = Field(default=True)
    auto_rebalance: bool = Field(default=False)
    daily_summary: bool = Field(default=False)
    cooldown_seconds: Optional[int] = Field(default=None)
    # None = global PRICE_MOVE_THRESHOLD_PCT, 0 = price alerts off
    price_move_threshold_pct: Optional[float] = Field(default=None)
    # UTC hours; no alerts are delivered inside [start, end)
    quiet_hours_start: Optional[int] = Field(default=None)
    quiet_hours_end: Optional[int] = Field(default=None)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Recipient(SQLModel, table=True):
    __tablename__ = "recipients"

    user_id: str = Field(primary_key=True)
    telegram_chat_id: Optional[str] = Field(default=None)
    webhook_url: Optional[str] = Field(default=None)
    webhook_secret: Optional[str] = Field(default=None)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
