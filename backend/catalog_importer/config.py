# catalog_importer/config.py
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def env(name: str, default):
    return Field(default=default, validation_alias=name)


class Settings(BaseSettings):
    """Runtime settings read from the environment and an optional ``.env`` file.

    Fields can also be passed by name, e.g. ``Settings(chunk_size=10)``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )

    database_url: str = env("DATABASE_URL", "sqlite:///./catalog.db")
    broker_url: str = env("BROKER_URL", "redis://redis:6379/1")
    result_backend: str = env("RESULT_BACKEND", "redis://redis:6379/2")
    redis_url: str = env("REDIS_URL", "redis://redis:6379/0")

    search_url: str = env("SEARCH_URL", "http://localhost:9200")
    search_alias: str = env("SEARCH_ALIAS", "products")
    search_timeout: int = env("SEARCH_TIMEOUT", 10)
    index_archived: bool = env("INDEX_ARCHIVED", True)

    chunk_size: int = env("IMPORT_CHUNK_SIZE", 50)
    chunk_max_bytes: int = env("IMPORT_CHUNK_MAX_BYTES", 256_000)
    dispatch_batch_size: int = env("DISPATCH_BATCH_SIZE", 10)
    dispatch_max_attempts: int = env("DISPATCH_MAX_ATTEMPTS", 3)
    dispatch_backoff: float = env("DISPATCH_BACKOFF", 0.5)
    row_concurrency: int = env("MERGE_ROW_CONCURRENCY", 4)
    index_max_attempts: int = env("INDEX_MAX_ATTEMPTS", 3)
    index_backoff: float = env("INDEX_BACKOFF", 0.5)
    rebuild_batch_size: int = env("REBUILD_BATCH_SIZE", 1000)

    max_import_rows: int = env("MAX_IMPORT_ROWS", 10_000)
    max_upload_bytes: int = env("MAX_UPLOAD_BYTES", 5 * 1024 * 1024)
    # submissions per user per window; 0 disables the limit
    import_rate_limit: int = env("IMPORT_RATE_LIMIT", 5)
    import_rate_window: int = env("IMPORT_RATE_WINDOW", 60)
    log_level: str = env("LOG_LEVEL", "INFO")


settings = Settings()
