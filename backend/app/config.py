from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = ".mangan"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("mangan.db")),
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
    return f"Defaults to `${{MANGAN_DATA_DIR}}/{relative_path}` when not explicitly set."


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
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from a `MANGAN_*` environment variable (or `.env`),
    and this class documents what it controls and its default.
    """

    model_config = SettingsConfigDict(
        env_prefix="MANGAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for the database and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("mangan.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('mangan.db'))}",
    )

    # Video sources.
    youtube_api_key: str | None = Field(
        default=None,
        description=(
            "YouTube Data API key. Used for the quota-metered fallback video source, "
            "channel avatars and channel resolution."
        ),
    )
    ytdlp_cookies_path: Path | None = Field(
        default=None,
        description="Optional cookies.txt passed to yt-dlp for age-gated or throttled channels.",
    )
    ytdlp_request_interval_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Minimum gap between per-video yt-dlp detail fetches.",
    )
    youtube_api_page_interval_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Minimum gap between YouTube Data API search pages.",
    )

    # Map links.
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for each outbound HTTP call made while resolving short map links.",
    )
    short_link_max_hops: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum redirect hops followed when resolving a short map link.",
    )

    # Sync behavior.
    sync_default_max_videos: int = Field(
        default=500,
        ge=1,
        description="Videos examined per channel when the trigger does not specify maxVideos.",
    )
    sync_max_videos_cap: int = Field(
        default=5_000,
        ge=1,
        description="Hard cap on videos per channel regardless of the caller request.",
    )
    sync_cutoff_days: int = Field(
        default=365,
        ge=1,
        description="Videos published longer ago than this are not examined.",
    )
    sync_progress_flush_every: int = Field(
        default=5,
        ge=1,
        description="Persist progress counters after this many processed videos.",
    )
    sync_stale_run_seconds: int = Field(
        default=6 * 3_600,
        ge=60,
        description=(
            "A run still marked running after this long is considered abandoned "
            "and is marked failed when a new run starts."
        ),
    )

    # Scheduler.
    scheduler_enabled: bool = Field(
        default=False,
        validation_alias="MANGAN_ENABLE_SCHEDULER",
        description="Enable the in-process periodic sync loop.",
    )
    sync_schedule_interval_seconds: int = Field(
        default=86_400,
        ge=60,
        description="Time between scheduled sync runs.",
    )

    # Access control.
    admin_session_token: str | None = Field(
        default=None,
        description="Expected value of the `mangan_admin_session` cookie for admin requests.",
    )
    cron_secret: str | None = Field(
        default=None,
        description="Shared secret accepted in the `X-Cron-Secret` header to trigger syncs.",
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
            raise ValueError("MANGAN_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("MANGAN_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator("ytdlp_cookies_path", mode="before")
    @classmethod
    def _normalize_cookies_path(cls, value: Any) -> Path | None:
        normalized = _normalize_optional_text(value) if not isinstance(value, Path) else value
        if normalized is None:
            return None
        return _resolve_path(normalized)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("youtube_api_key", "admin_session_token", "cron_secret", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _validate_sync_limits(settings: AppSettings) -> None:
    if settings.sync_default_max_videos > settings.sync_max_videos_cap:
        raise ValueError(
            "MANGAN_SYNC_DEFAULT_MAX_VIDEOS must not exceed MANGAN_SYNC_MAX_VIDEOS_CAP "
            f"({settings.sync_default_max_videos} > {settings.sync_max_videos_cap})."
        )


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
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    settings = _resolve_path_fields(settings)
    _validate_sync_limits(settings)
    return settings
