import os
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CATALOG_", extra="ignore")

    db_user: str = os.getenv("POSTGRES_USER", "catalog")
    db_password: str = os.getenv("POSTGRES_PASSWORD", "catalog")
    db_name: str = os.getenv("POSTGRES_DB", "catalog")
    database_url: str = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{os.getenv('POSTGRES_USER', 'catalog')}:{os.getenv('POSTGRES_PASSWORD', 'catalog')}@db:5432/{os.getenv('POSTGRES_DB', 'catalog')}",
    )
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Remote catalog (GraphQL endpoint lives at {stash_url}/graphql)
    stash_url: str = os.getenv("STASH_URL", "http://stash:9999")
    stash_api_key: str = os.getenv("STASH_API_KEY", "")
    stash_timeout_seconds: float = float(os.getenv("STASH_TIMEOUT_SECONDS", "30"))

    # Sync sizing: pages are fetched page_size at a time and committed batch_size at a time
    page_size: int = int(os.getenv("SYNC_PAGE_SIZE", "1000"))
    batch_size: int = int(os.getenv("SYNC_BATCH_SIZE", "500"))
    id_page_size: int = int(os.getenv("SYNC_ID_PAGE_SIZE", "5000"))
    reconcile_chunk_size: int = int(os.getenv("SYNC_RECONCILE_CHUNK_SIZE", "500"))
    sync_interval_minutes: int = int(os.getenv("SYNC_INTERVAL_MINUTES", "60"))
    # TTL of the sync lock; renewed at every page and batch boundary
    sync_lock_timeout_seconds: int = int(os.getenv("SYNC_LOCK_TIMEOUT_SECONDS", "900"))
    tombstone_retention_days: int = int(os.getenv("TOMBSTONE_RETENTION_DAYS", "30"))

    # Retry policy for transient remote failures
    backoff_max_retries: int = int(os.getenv("BACKOFF_MAX_RETRIES", "5"))
    backoff_base_seconds: float = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))

    # Ad-hoc NOT IN exclusion lists: max IDs per clause, max clauses per query
    exclusion_chunk_limit: int = int(os.getenv("EXCLUSION_CHUNK_LIMIT", "500"))
    max_exclusion_chunks: int = int(os.getenv("MAX_EXCLUSION_CHUNKS", "20"))

    # Per-user recompute lock shared by API and workers
    exclusion_lock_timeout_seconds: int = int(os.getenv("EXCLUSION_LOCK_TIMEOUT_SECONDS", "300"))
    exclusion_lock_wait_seconds: float = float(os.getenv("EXCLUSION_LOCK_WAIT_SECONDS", "60"))
    # Hide galleries, groups, studios, performers and tags with nothing visible behind them (non-admin users)
    hide_empty_entities: bool = os.getenv("HIDE_EMPTY_ENTITIES", "true").lower() in ("1", "true", "yes")

    @field_validator(
        "page_size",
        "batch_size",
        "id_page_size",
        "reconcile_chunk_size",
        "sync_interval_minutes",
        "exclusion_chunk_limit",
        "max_exclusion_chunks",
    )
    @classmethod
    def _must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


settings = Settings()
