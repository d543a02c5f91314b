import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        horizon_days: int,
        default_company_id: int,
        generation_hour: int,
        generation_minute: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.horizon_days = horizon_days
        self.default_company_id = default_company_id
        self.generation_hour = generation_hour
        self.generation_minute = generation_minute


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "America/Sao_Paulo")
    horizon_days = int(os.getenv("LEDGER_HORIZON_DAYS", "30"))
    default_company_id = int(os.getenv("LEDGER_DEFAULT_COMPANY_ID", "1"))
    generation_hour = int(os.getenv("LEDGER_GENERATION_HOUR", "3"))
    generation_minute = int(os.getenv("LEDGER_GENERATION_MINUTE", "15"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        horizon_days=horizon_days,
        default_company_id=default_company_id,
        generation_hour=generation_hour,
        generation_minute=generation_minute,
    )
