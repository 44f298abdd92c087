from pydantic_settings import BaseSettings
from functools import lru_cache
from fastapi import Depends
from typing_extensions import Annotated


class Settings(BaseSettings):
    # Redis
    redis_dsn: str = "redis://localhost:6379/0"
    redis_enabled: bool = True
    redis_pool_size: int = 5
    redis_socket_timeout: float = 5.0

    # Key-value cache
    cache_default_ttl: int = 3600
    cache_read_timeout: float = 1.0  # seconds before a lookup counts as a miss
    cache_write_timeout: float = 2.0  # seconds before a SET counts as failed
    cache_large_payload_bytes: int = 100 * 1024
    cache_memory_budget_bytes: int = 50 * 1024 * 1024
    cache_eviction_ratio: float = 0.8
    cache_eviction_interval: int = 60
    memory_maxsize: int = 10_000  # in-memory client capacity (entries)

    # Rate limiting
    rate_limit_window: int = 3600
    rate_limit_max_requests: int = 100

    # Sync engine
    bulk_concurrency: int = 4
    sync_fast_read_timeout: float = 1.2
    sync_read_timeout: float = 12.0
    sync_cache_read_timeout: float = 5.0
    sync_write_timeout: float = 15.0
    sync_delete_timeout: float = 10.0
    sync_max_retries: int = 2
    sync_retry_base_delay: float = 0.5
    sync_retry_max_delay: float = 8.0
    sync_cache_refresh_delay: float = 15.0
    sync_local_refresh_delay: float = 20.0
    backend_url: str = "http://localhost:8000"
    local_cache_path: str | None = None

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
