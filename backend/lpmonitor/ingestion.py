"""
Webhook ingestion - push path for on-chain position events.

Latency-optimized: signature check, schema validation, relevance check and a
store upsert. No chain reads happen here. Bad events are rejected and logged
one by one so a single malformed item never blocks the rest of a batch.

Payload (one object or a list):
    {
      "eventId": "sig-or-uuid",
      "type": "position_update" | "position_closed",
      "slot": 251234567,
      "position": {
        "address": "...", "owner": "...", "pool": "...", "dex": "meteora_dlmm",
        "lowerBinId": -120, "upperBinId": -90, "activeBinId": -101,
        "activePrice": 142.7, "liquidityX": 1.5, "liquidityY": 210.0,
        "feesX": 0.01, "feesY": 1.2
      }
    }
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from lpmonitor.chain.base import PositionState
from lpmonitor.errors import MalformedEvent, UnknownPosition
from lpmonitor.log import log
from lpmonitor.store import SnapshotStore, UNKNOWN_POSITION
from lpmonitor.status import MonitoringStatus
from lpmonitor.ttl_store import TTLStore


class PositionPayload(BaseModel):
    address: str = Field(min_length=1)
    owner: str = Field(min_length=1)
    pool: str = Field(min_length=1)
    dex: str = "meteora_dlmm"
    lowerBinId: int
    upperBinId: int
    activeBinId: int
    activePrice: Optional[float] = None
    liquidityX: float = 0.0
    liquidityY: float = 0.0
    feesX: float = 0.0
    feesY: float = 0.0

    @model_validator(mode="after")
    def check_range(self):
        if self.lowerBinId > self.upperBinId:
            raise ValueError(f"lowerBinId {self.lowerBinId} is above upperBinId {self.upperBinId}")
        return self


class ChainEvent(BaseModel):
    eventId: str = Field(min_length=1)
    type: Literal["position_update", "position_closed"] = "position_update"
    slot: int = Field(gt=0)
    position: PositionPayload

    def to_state(self) -> PositionState:
        p = self.position
        return PositionState(
            position_ref=p.address,
            wallet_address=p.owner,
            pool_address=p.pool,
            dex=p.dex,
            lower_bound=p.lowerBinId,
            upper_bound=p.upperBinId,
            active_bound=p.activeBinId,
            active_price=p.activePrice,
            liquidity_x=p.liquidityX,
            liquidity_y=p.liquidityY,
            fees_x=p.feesX,
            fees_y=p.feesY,
            slot=self.slot,
        )


@dataclass
class Rejection:
    event_id: Optional[str]
    reason: str


@dataclass
class IngestResult:
    accepted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "accepted": len(self.accepted),
            "duplicates": len(self.duplicates),
            "rejected": [{"eventId": r.event_id, "reason": r.reason} for r in self.rejected],
        }


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    # header values are latin-1 decoded and may hold non-ASCII
    return hmac.compare_digest(expected.encode(), signature.encode("latin-1", errors="replace"))


def parse_body(body: bytes) -> list:
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedEvent(f"invalid JSON: {e}") from e
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and data:
        return data
    raise MalformedEvent("expected an event object or a non-empty list of events")


class WebhookIngestor:
    def __init__(self, store: SnapshotStore, status: MonitoringStatus, seen_events: TTLStore):
        self.store = store
        self.status = status
        self.seen_events = seen_events

    def handle(self, body: bytes, now: datetime = None) -> IngestResult:
        """
        Process a verified webhook body. Raises MalformedEvent when the body
        as a whole is unusable: not JSON, or no item in it is a valid event.
        Otherwise per-event problems become rejections.
        """
        now = now or datetime.utcnow()
        items = parse_body(body)
        result = IngestResult()
        malformed = 0

        for raw in items:
            event_id = raw.get("eventId") if isinstance(raw, dict) else None
            try:
                event = ChainEvent.model_validate(raw)
            except ValidationError as e:
                reason = f"malformed: {e.error_count()} validation error(s)"
                log(f"[webhook] Rejected event {event_id}: {reason}", level="WARN")
                result.rejected.append(Rejection(event_id, reason))
                malformed += 1
                continue

            if event.eventId in self.seen_events:
                result.duplicates.append(event.eventId)
                continue

            try:
                self._apply(event, now)
            except UnknownPosition as e:
                log(f"[webhook] Rejected event {event.eventId}: {e}", level="WARN")
                result.rejected.append(Rejection(event.eventId, "unknown_position"))
                continue
            except Exception as e:
                log(f"[webhook] Error applying event {event.eventId}: {e}", level="ERROR")
                result.rejected.append(Rejection(event.eventId, "internal_error"))
                continue

            self.seen_events.set(event.eventId)
            result.accepted.append(event.eventId)

        if malformed == len(items):
            reasons = "; ".join(f"{r.event_id}: {r.reason}" for r in result.rejected)
            raise MalformedEvent(f"no valid event in body ({reasons})")

        if result.accepted:
            self.status.record_webhook(self.store.count_active(), ts=now)
        log(f"[webhook] {len(result.accepted)} accepted, {len(result.duplicates)} duplicate, "
            f"{len(result.rejected)} rejected")
        return result

    def _apply(self, event: ChainEvent, now: datetime):
        state = event.to_state()

        if event.type == "position_closed":
            if self.store.get(state.position_ref) is None:
                raise UnknownPosition(f"close for untracked position {state.position_ref}")
            if not self.store.deactivate(state.position_ref, version=state.slot):
                log(f"[webhook] Close event for {state.position_ref} ignored (stale or already inactive)", level="DEBUG")
            return

        result = self.store.upsert(state, source="webhook", now=now)
        if result.outcome == UNKNOWN_POSITION:
            raise UnknownPosition(f"position {state.position_ref} of untracked wallet {state.wallet_address}")
