import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Override engine before anything opens a session
import lpmonitor.db.engine as engine_module

_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
engine_module._engine = _test_engine

from lpmonitor.chain.base import PositionState  # noqa: E402
from lpmonitor.config import Settings  # noqa: E402
from lpmonitor.db import models  # noqa: E402,F401
from lpmonitor.db import repository  # noqa: E402

WALLET = "WaLLet1111111111111111111111111111111111111"
POOL = "PooL22222222222222222222222222222222222222222"


@pytest.fixture(autouse=True)
def setup_db():
    SQLModel.metadata.create_all(_test_engine)
    yield
    SQLModel.metadata.drop_all(_test_engine)


@pytest.fixture
def settings():
    s = Settings()
    s.chain_reader = "mock"
    s.poll_interval_seconds = 300
    s.stale_after_seconds = 240
    s.poll_concurrency = 4
    s.poll_fetch_attempts = 2
    s.poll_fetch_timeout_seconds = 5
    s.poll_cycle_deadline_seconds = 10
    s.price_move_threshold_pct = 10
    s.price_move_cooldown_seconds = 3600
    s.rebalance_after_seconds = 3600
    s.out_of_range_cooldown_seconds = 900
    s.back_in_range_cooldown_seconds = 900
    s.rebalance_cooldown_seconds = 3600
    s.delivery_timeout_seconds = 2
    s.delivery_max_attempts = 3
    s.dispatch_retry_interval_seconds = 15
    s.alert_retention_hours = 168
    s.webhook_secret = ""
    s.webhook_dedup_ttl_seconds = 600
    s.telegram_bot_token = ""
    return s


@pytest.fixture
def make_state():
    def _make(ref="pos-P", lower=100, upper=110, active=105, slot=1, wallet=WALLET, price=None):
        return PositionState(
            position_ref=ref,
            wallet_address=wallet,
            pool_address=POOL,
            lower_bound=lower,
            upper_bound=upper,
            active_bound=active,
            slot=slot,
            active_price=price,
        )
    return _make


@pytest.fixture
def tracked_wallet():
    return repository.upsert_tracked_wallet(WALLET, "user-1")
