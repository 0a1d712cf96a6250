from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "graph_api_base_url",
        "graph_access_token",
        "graph_api_timeout_seconds",
        "graph_default_user_id",
        "graph_webhook_url",
        "graph_client_state",
        "graph_default_resource_types",
        "subscription_max_lifetime_minutes",
        "subscription_safety_window_hours",
        "subscription_renewal_tolerance_minutes",
        "subscription_renewal_max_attempts",
        "subscription_renewal_backoff_seconds",
        "subscription_sweep_interval_minutes",
        "subscription_scheduler_enabled",
        "subscription_ensure_on_startup",
        "notification_dedup_window_minutes",
        "notification_worker_count",
        "notification_processing_deadline_seconds",
        "transcript_fetch_max_attempts",
        "transcript_fetch_backoff_seconds",
        "summarization_max_attempts",
        "summarization_backoff_seconds",
        "gemini_api_key",
        "gemini_model",
        "gemini_api_timeout_seconds",
        "persistence_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_subscriptions_collection",
        "mongodb_notifications_collection",
        "mongodb_dedup_claims_collection",
        "mongodb_meetings_collection",
        "mongodb_transcripts_collection",
        "mongodb_summaries_collection",
        "mongodb_connect_timeout_ms",
    },
)

SUPPORTED_RESOURCE_TYPES = frozenset({"calendar_events", "online_meetings", "call_records"})


class Settings(BaseSettings):
    app_name: str = "Graph Notification Pipeline"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = ["*"]
    graph_api_base_url: str = "https://graph.microsoft.com/v1.0"
    graph_access_token: str = ""
    graph_api_timeout_seconds: float = 10.0
    graph_default_user_id: str = ""
    graph_webhook_url: str = ""
    graph_client_state: str = ""
    graph_default_resource_types: Annotated[list[str], NoDecode] = ["call_records"]
    subscription_max_lifetime_minutes: int = 4230
    subscription_safety_window_hours: float = 24.0
    subscription_renewal_tolerance_minutes: int = 60
    subscription_renewal_max_attempts: int = 4
    subscription_renewal_backoff_seconds: float = 2.0
    subscription_sweep_interval_minutes: int = 180
    subscription_scheduler_enabled: bool = False
    subscription_ensure_on_startup: bool = False
    notification_dedup_window_minutes: int = 60
    notification_worker_count: int = 4
    notification_processing_deadline_seconds: float = 600.0
    transcript_fetch_max_attempts: int = 5
    transcript_fetch_backoff_seconds: float = 30.0
    summarization_max_attempts: int = 3
    summarization_backoff_seconds: float = 2.0
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_api_timeout_seconds: float = 30.0
    persistence_store: str = "mongodb"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "graph_notifications"
    mongodb_subscriptions_collection: str = "graph_subscriptions"
    mongodb_notifications_collection: str = "graph_notifications"
    mongodb_dedup_claims_collection: str = "graph_notification_claims"
    mongodb_meetings_collection: str = "meetings"
    mongodb_transcripts_collection: str = "meeting_transcripts"
    mongodb_summaries_collection: str = "meeting_summaries"
    mongodb_connect_timeout_ms: int = 2000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("graph_default_resource_types", mode="before")
    @classmethod
    def parse_default_resource_types(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        normalized: list[str] = []
        for raw_type in value:
            cleaned = raw_type.strip().lower()
            if cleaned in SUPPORTED_RESOURCE_TYPES and cleaned not in normalized:
                normalized.append(cleaned)
        return normalized

    @field_validator("persistence_store", mode="before")
    @classmethod
    def normalize_persistence_store(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("graph_webhook_url", "graph_client_state", "graph_access_token", mode="before")
    @classmethod
    def strip_secret_values(cls, value: str) -> str:
        return (value or "").strip().strip('"').strip("'")

    @field_validator("graph_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_graph_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("gemini_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_gemini_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 30.0
        return parsed_value

    @field_validator("subscription_max_lifetime_minutes", mode="before")
    @classmethod
    def normalize_subscription_lifetime(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 4230
        # Graph rejects anything beyond the call record / event maximum.
        return min(parsed_value, 4230)

    @field_validator(
        "subscription_renewal_max_attempts",
        "transcript_fetch_max_attempts",
        "summarization_max_attempts",
        "notification_worker_count",
        mode="before",
    )
    @classmethod
    def normalize_positive_count(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 1
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
