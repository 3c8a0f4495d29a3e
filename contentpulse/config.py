from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".content-pulse"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{CONTENT_PULSE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """
    Runtime configuration, read from `CONTENT_PULSE_*` environment variables
    (or a local `.env`). Each field documents what it controls and its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="CONTENT_PULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the SQLite store and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Metrics providers.
    youtube_api_key: str | None = Field(
        default=None,
        description="YouTube Data API key used for bulk video statistics.",
    )
    youtube_api_base_url: str = Field(
        default="https://www.googleapis.com/youtube/v3",
        description="YouTube Data API base URL.",
    )
    instagram_rapidapi_key: str | None = Field(
        default=None,
        description="RapidAPI key for the Instagram reel statistics scraper.",
    )
    instagram_rapidapi_host: str = Field(
        default="instagram-api-fast-reliable-data-scraper.p.rapidapi.com",
        description="RapidAPI host serving the Instagram `post?shortcode=` endpoint.",
    )
    fetch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound for one external metrics call; a timeout fails only that item.",
    )

    # Sync loop.
    sync_inter_request_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Fixed pause between successive external calls within one sync run.",
    )
    youtube_batch_size: int = Field(
        default=50,
        ge=1,
        le=50,
        description="Video IDs per YouTube videos.list call (API maximum is 50).",
    )

    # Chat allowance.
    chat_daily_limit: int = Field(
        default=10,
        ge=0,
        description="Chat messages allowed per owner within one rolling window.",
    )
    chat_window_seconds: int = Field(
        default=86_400,
        ge=1,
        description="Length of the rolling chat allowance window.",
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=True,
        description="Enable the background daily refresh loop.",
    )
    scheduler_poll_interval_seconds: int = Field(
        default=300,
        description="How often the scheduler looks for owners due for a refresh.",
    )
    scheduler_refresh_interval_seconds: int = Field(
        default=86_400,
        description="Minimum age of an owner's last refresh before the scheduler re-syncs it.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for backend log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CONTENT_PULSE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("CONTENT_PULSE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("youtube_api_base_url", mode="before")
    @classmethod
    def _normalize_youtube_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CONTENT_PULSE_YOUTUBE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("CONTENT_PULSE_YOUTUBE_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("instagram_rapidapi_host", mode="before")
    @classmethod
    def _normalize_instagram_host(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("CONTENT_PULSE_INSTAGRAM_RAPIDAPI_HOST must be a string.")
        normalized = value.strip().removeprefix("https://").rstrip("/")
        if not normalized:
            raise ValueError("CONTENT_PULSE_INSTAGRAM_RAPIDAPI_HOST must not be empty.")
        return normalized

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", "instagram_rapidapi_key", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name)) for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
