import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        user_id: int,
        projection_cap: int,
        catch_up_limit: int,
        scheduler_enabled: bool,
        daily_run: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.user_id = user_id
        self.projection_cap = projection_cap
        self.catch_up_limit = catch_up_limit
        self.scheduler_enabled = scheduler_enabled
        self.daily_run = daily_run

    @property
    def daily_run_hour(self) -> int:
        return int(self.daily_run.split(":", 1)[0])

    @property
    def daily_run_minute(self) -> int:
        return int(self.daily_run.split(":", 1)[1])


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "Europe/Berlin")
    user_id = int(os.getenv("FINTRACK_USER_ID", "1"))
    projection_cap = int(os.getenv("FINTRACK_PROJECTION_CAP", "500"))
    catch_up_limit = int(os.getenv("FINTRACK_CATCH_UP_LIMIT", "365"))
    scheduler_enabled = _env_flag("FINTRACK_SCHEDULER_ENABLED", True)
    daily_run = os.getenv("FINTRACK_DAILY_RUN", "03:15")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        user_id=user_id,
        projection_cap=projection_cap,
        catch_up_limit=catch_up_limit,
        scheduler_enabled=scheduler_enabled,
        daily_run=daily_run,
    )
