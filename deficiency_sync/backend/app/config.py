from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ---- App ----
    app_env: str = "local"  # local|dev|prod
    database_url: str = "sqlite:///./deficiency_sync.db"
    app_version: str = "2026-10-19.v1"

    # ---- Celery ----
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None

    # ---- Trello API ----
    trello_base_url: str = "https://api.trello.com/1"
    trello_timeout_seconds: float = 10.0
    trello_connect_retries: int = 2

    # ---- Sync retries (bus redelivery) ----
    sync_max_retries: int = 5
    sync_retry_base_seconds: int = 5
    sync_retry_max_seconds: int = 300

    # ---- Deficient items ----
    deficiency_initial_state: str = "requires-action"
    default_timezone: str = "America/New_York"
    comment_templates_path: str | None = None
    deficiency_url_template: str = "https://app.local/properties/{property_id}/deficient-items/{deficiency_id}"

    # ---- Overdue sweep (beat) ----
    overdue_sweep_interval_seconds: int = 3600
    overdue_eligible_states: list[str] = ["pending", "requires-progress-update"]
    system_user_id: str = "system"

    responsibility_groups: dict[str, str] = {
        "site_level_in-house": "Site Level, In-House",
        "site_level_manages_vendor": "Site Level, Managing Vendor",
        "corporate_manages_vendor": "Corporate, Managing Vendor",
        "corporate": "Corporate",
    }

    def model_post_init(self, __context) -> None:
        env = (self.app_env or "local").strip().lower()
        is_prod = env in ("prod", "production")

        if is_prod and not self.trello_base_url.lower().startswith("https://"):
            raise ValueError("SECURITY: trello_base_url must use https in prod")

        if self.trello_connect_retries < 0:
            object.__setattr__(self, "trello_connect_retries", 0)


settings = Settings()
