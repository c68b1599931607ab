"""
Configuration module - all settings from environment variables (.env)
Single source of truth for all configurable values.
"""
from functools import lru_cache
import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    def __init__(self):
        # ============ Chain Reader ============
        self.chain_reader = os.getenv("CHAIN_READER", "gateway").strip().lower()
        self.chain_gateway_url = os.getenv("CHAIN_GATEWAY_URL", "http://localhost:15888").rstrip("/")
        self.chain_timeout_seconds = float(os.getenv("CHAIN_TIMEOUT_SECONDS", "10"))
        self.chain_max_retries = int(os.getenv("CHAIN_MAX_RETRIES", "3"))

        # ============ Polling ============
        self.poll_interval_seconds = int(os.getenv("POLL_INTERVAL_SECONDS", "300"))
        self.stale_after_seconds = int(os.getenv("STALE_AFTER_SECONDS", "240"))
        self.poll_concurrency = int(os.getenv("POLL_CONCURRENCY", "8"))
        self.poll_fetch_attempts = int(os.getenv("POLL_FETCH_ATTEMPTS", "2"))
        self.poll_cycle_deadline_seconds = float(os.getenv("POLL_CYCLE_DEADLINE_SECONDS", "120"))
        self.poll_fetch_timeout_seconds = float(os.getenv("POLL_FETCH_TIMEOUT_SECONDS", "30"))

        # ============ Risk Rules ============
        self.price_move_threshold_pct = float(os.getenv("PRICE_MOVE_THRESHOLD_PCT", "10"))
        self.price_move_cooldown_seconds = int(os.getenv("PRICE_MOVE_COOLDOWN_SECONDS", "3600"))
        self.rebalance_after_seconds = int(os.getenv("REBALANCE_AFTER_SECONDS", "3600"))

        # ============ Alert Cooldowns ============
        self.out_of_range_cooldown_seconds = int(os.getenv("OUT_OF_RANGE_COOLDOWN_SECONDS", "900"))
        self.back_in_range_cooldown_seconds = int(os.getenv("BACK_IN_RANGE_COOLDOWN_SECONDS", "900"))
        self.rebalance_cooldown_seconds = int(os.getenv("REBALANCE_COOLDOWN_SECONDS", "3600"))

        # ============ Delivery ============
        self.delivery_timeout_seconds = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "10"))
        self.delivery_max_attempts = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "5"))
        self.dispatch_retry_interval_seconds = float(os.getenv("DISPATCH_RETRY_INTERVAL_SECONDS", "15"))
        self.alert_retention_hours = int(os.getenv("ALERT_RETENTION_HOURS", "168"))
        self.daily_summary_hour_utc = int(os.getenv("DAILY_SUMMARY_HOUR_UTC", "9"))

        # ============ Webhook Ingestion ============
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "")
        self.webhook_dedup_ttl_seconds = int(os.getenv("WEBHOOK_DEDUP_TTL_SECONDS", "600"))

        # ============ Telegram ============
        self.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")

        # ============ Database ============
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./lp_monitor.db")

        # ============ Logging ============
        self.log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    def cooldown_for(self, kind: str) -> int:
        return {
            "out_of_range": self.out_of_range_cooldown_seconds,
            "back_in_range": self.back_in_range_cooldown_seconds,
            "price_move": self.price_move_cooldown_seconds,
            "rebalance_recommended": self.rebalance_cooldown_seconds,
        }.get(kind, 0)

    def validate(self) -> list[str]:
        """Validate settings and return list of warnings."""
        warnings = []
        if not self.telegram_bot_token:
            warnings.append("TELEGRAM_BOT_TOKEN not set - Telegram alerts will not be sent")
        if not self.webhook_secret:
            warnings.append("WEBHOOK_SECRET not set - chain webhooks are accepted unsigned")
        if self.stale_after_seconds >= self.poll_interval_seconds * 3:
            warnings.append(
                f"STALE_AFTER_SECONDS={self.stale_after_seconds} skips most poll cycles "
                f"(POLL_INTERVAL_SECONDS={self.poll_interval_seconds})"
            )
        if self.poll_cycle_deadline_seconds > self.poll_interval_seconds:
            warnings.append("POLL_CYCLE_DEADLINE_SECONDS exceeds POLL_INTERVAL_SECONDS - cycles will be skipped")
        if self.poll_concurrency < 1:
            warnings.append(f"POLL_CONCURRENCY={self.poll_concurrency} is invalid, using 1")
            self.poll_concurrency = 1
        return warnings


@lru_cache
def get_settings() -> Settings:
    return Settings()
