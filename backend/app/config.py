import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/nextstock')
        # Comma-separated list of allowed CORS origins for the dashboard/POS clients.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.session_ttl_hours = self._int("SESSION_TTL_HOURS", 12)
        self.heartbeat_interval_seconds = self._int("HEARTBEAT_INTERVAL_SECONDS", 15)
        # Printed at the top of every receipt.
        self.company_name = os.getenv("COMPANY_NAME", "Next Stock").strip() or "Next Stock"
        self.company_address = os.getenv("COMPANY_ADDRESS", "").strip()
        self.company_phone = os.getenv("COMPANY_PHONE", "").strip()
        # Key material for encrypting integration credentials at rest (see secrets_box.py).
        self.integrations_secret = (os.getenv("INTEGRATIONS_SECRET") or "").strip()
        self.image_max_mb = max(1, min(self._int("IMAGE_MAX_MB", 10), 50))

settings = Settings()
