from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "extra": "ignore",
        "env_prefix": "INBOXAGENT_",
        "env_file": (
            str(Path.home() / ".local" / "share" / "inboxagent" / ".env"),
            ".env",
        ),
        "env_file_encoding": "utf-8",
    }

    data: Path = Path.home() / ".local" / "share" / "inboxagent"
    model: str = "claude-sonnet-4-5"
    log_level: str = "INFO"
    timezone: str = "America/New_York"

    # Reply scanning
    scan_lookback_minutes: int = 60
    scan_schedule: str = "*/10 * * * *"

    # Outbound call bounds, in seconds
    request_timeout: float = 10.0
    completion_timeout: float = 120.0

    # Meeting proposals
    business_start_hour: int = 9
    business_end_hour: int = 17
    max_candidate_slots: int = 5
    proposed_slot_count: int = 3
    proposal_window_days: int = 7
    default_meeting_minutes: int = 30

    @property
    def db_path(self) -> Path:
        return self.data / "inboxagent.db"


settings = Settings()
