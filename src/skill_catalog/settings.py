"""Configuration management for the skill catalog pipeline."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, TomlConfigSettingsSource

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def _find_catalog_toml() -> Path | None:
    """Walk up from cwd looking for ``catalog.toml``."""
    current = Path.cwd().resolve()
    while True:
        candidate = current / "catalog.toml"
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


_DAY_S = 24 * 60 * 60


class RedisSettings(BaseSettings):
    """Redis/Valkey connection settings for the work queue and pipeline state."""

    host: str = Field(default="localhost", description="Redis/Valkey host.")
    port: int = Field(default=6379, description="Redis/Valkey port.")
    db: int = Field(default=0, description="Redis database number.")
    password: str = Field(default="", description="Redis/Valkey password.")
    stream_prefix: str = Field(default="catalog", description="Prefix for Redis Stream and state keys.")

    @property
    def url(self) -> str:
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class DatabaseSettings(BaseSettings):
    """Relational metadata store settings."""

    url: str = Field(default="sqlite+aiosqlite:///catalog.db", description="SQLAlchemy async database URL.")
    echo: bool = Field(default=False, description="Log every SQL statement.")
    query_timeout_s: float = Field(default=10.0, description="Timeout in seconds for read queries.")
    write_timeout_s: float = Field(default=60.0, description="Timeout in seconds for write transactions.")


class BlobSettings(BaseSettings):
    """Blob (manifest + archive) store settings."""

    root: Path = Field(default=Path("blobs"), description="Root directory of the filesystem blob store.")


class GitHubSettings(BaseSettings):
    """Source platform (GitHub REST API) settings."""

    api_base: str = Field(default="https://api.github.com", description="GitHub REST API base URL.")
    token: str = Field(default="", description="Personal access token (raises the rate limit).")
    api_version: str = Field(default="2022-11-28", description="X-GitHub-Api-Version header value.")
    user_agent: str = Field(default="skill-catalog/0.1", description="User-Agent header value.")
    timeout_s: float = Field(default=15.0, description="Per-request timeout in seconds.")


class ClassifierSettings(BaseSettings):
    """Cascading classifier settings. Remote models route through litellm."""

    primary_model: str = Field(default="openrouter/deepseek/deepseek-chat", description="Primary litellm model.")
    primary_api_key: str = Field(default="", description="API key for the primary model (empty disables it).")
    primary_api_base: str | None = Field(default=None, description="Optional API base for the primary model.")
    secondary_model: str = Field(default="deepseek/deepseek-chat", description="Secondary litellm model.")
    secondary_api_key: str = Field(default="", description="API key for the secondary model (empty disables it).")
    secondary_api_base: str | None = Field(default=None, description="Optional API base for the secondary model.")
    use_frontmatter: bool = Field(default=True, description="Accept categories declared in manifest front-matter.")
    max_content_chars: int = Field(default=4000, description="Manifest characters included in the prompt.")
    temperature: float = Field(default=0.3, description="Sampling temperature for remote classifiers.")
    max_tokens: int = Field(default=500, description="Completion token cap for remote classifiers.")
    timeout_s: float = Field(default=30.0, description="Timeout in seconds for remote classifier calls.")


class DiscoverySettings(BaseSettings):
    """Public event feed polling settings."""

    events_per_page: int = Field(default=100, description="Events fetched per tick.")
    event_types: list[str] = Field(default_factory=lambda: ["PushEvent"], description="Event types that enqueue work.")
    marker_ttl_s: int = Field(default=7 * _DAY_S, description="TTL of the cursor and per-event dedup markers.")
    tick_timeout_s: float = Field(default=60.0, description="Overall time limit of one discovery tick.")


class IndexingSettings(BaseSettings):
    """Indexing consumer settings."""

    discover_nested: bool = Field(default=True, description="List the repo tree when no root manifest exists.")
    max_nested_manifests: int = Field(default=50, description="Max nested manifests enqueued per repository.")
    duplicate_guard_max_stars: int = Field(
        default=100, description="New skills below this star count are checked for copied content."
    )
    duplicate_guard_min_original_stars: int = Field(
        default=1000, description="Star count an original must have for a copy to be rejected."
    )
    description_max_chars: int = Field(default=500, description="Max length of a derived description.")


class QueueSettings(BaseSettings):
    """Consumer batch and redelivery settings."""

    batch_size: int = Field(default=10, description="Max messages pulled per read.")
    block_ms: int = Field(default=2000, description="XREADGROUP block timeout in milliseconds.")
    redelivery_idle_ms: int = Field(default=60_000, description="Idle time before a pending message is re-claimed.")
    max_deliveries: int = Field(default=5, description="Deliveries before a failing message is dropped.")
    maxlen: int = Field(default=10_000, description="Approximate max stream length.")


class TierSettings(BaseSettings):
    """Lifecycle tier thresholds, windows and re-index intervals (seconds)."""

    hot_min_stars: int = Field(default=1000)
    hot_access_window_s: int = Field(default=7 * _DAY_S)
    hot_update_interval_s: int = Field(default=6 * 60 * 60)
    warm_min_stars: int = Field(default=100)
    warm_access_window_s: int = Field(default=30 * _DAY_S)
    warm_update_interval_s: int = Field(default=_DAY_S)
    cool_min_stars: int = Field(default=10)
    cool_access_window_s: int = Field(default=90 * _DAY_S)
    cool_update_interval_s: int = Field(default=7 * _DAY_S)
    archive_max_stars: int = Field(default=5, description="Skills below this star count may be archived.")
    archive_access_staleness_s: int = Field(default=365 * _DAY_S)
    archive_commit_staleness_s: int = Field(default=2 * 365 * _DAY_S)
    counter_7d_window_s: int = Field(default=7 * _DAY_S)
    counter_30d_window_s: int = Field(default=30 * _DAY_S)
    page_size: int = Field(default=1000, description="Skills evaluated per page.")
    max_pages: int = Field(default=10_000, description="Upper bound on pages per run.")
    summary_ttl_s: int = Field(default=30 * _DAY_S)


class ArchiveSettings(BaseSettings):
    """Archive engine settings."""

    batch_limit: int = Field(default=1000, description="Max candidates archived per run.")
    summary_ttl_s: int = Field(default=365 * _DAY_S)


class SchedulerSettings(BaseSettings):
    """Periodic job intervals used by the daemon (seconds, 0 disables)."""

    discovery_interval_s: float = Field(default=5 * 60)
    tiers_interval_s: float = Field(default=_DAY_S)
    archive_interval_s: float = Field(default=30 * _DAY_S)


class ObservabilitySettings(BaseSettings):
    """OpenTelemetry observability settings (requires ``[otel]`` extra)."""

    enabled: bool = Field(default=False, description="Enable OpenTelemetry tracing and metrics.")
    exporter: str = Field(default="otlp", description="Exporter type: 'otlp', 'console', or 'none'.")
    endpoint: str = Field(default="http://localhost:4317", description="OTLP collector endpoint.")
    service_name: str = Field(default="skill-catalog", description="OTel service.name resource attribute.")
    sample_rate: float = Field(default=1.0, description="Trace sample rate (1.0 = all, 0.1 = 10%).")


class CatalogSettings(BaseSettings):
    """Root configuration for the skill catalog pipeline."""

    model_config = SettingsConfigDict(
        toml_file="catalog.toml",
        env_prefix="CATALOG_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_path = _find_catalog_toml()
        sources: list[PydanticBaseSettingsSource] = [init_settings, env_settings]
        if toml_path:
            sources.append(TomlConfigSettingsSource(settings_cls, toml_file=toml_path))
        sources.append(file_secret_settings)
        return tuple(sources)

    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    blobs: BlobSettings = Field(default_factory=BlobSettings)
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    indexing: IndexingSettings = Field(default_factory=IndexingSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    tiers: TierSettings = Field(default_factory=TierSettings)
    archive: ArchiveSettings = Field(default_factory=ArchiveSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
