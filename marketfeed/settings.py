from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Listing source (override via env)
    SOURCE_BASE_URL: str = "http://localhost:8000"
    REQUEST_TIMEOUT: float = 10.0
    MAX_RETRIES: int = 5
    RETRY_MAX_WAIT: float = 8.0
    CHANGE_FEED_RECONNECT_DELAY: float = 2.0

    # Paging + cache freshness (fresh < T1 <= stale < T2 <= expired)
    PAGE_SIZE: int = 20
    CACHE_FRESH_SECONDS: float = 60.0
    CACHE_EXPIRE_SECONDS: float = 300.0
    PAGE_CACHE_MAX_PAGES: int = 256

    # Lazy loading
    VIEWPORT_ROOT_MARGIN: float = 300.0
    # visible-sentinel retries after consecutive failed loads (0 disables)
    LOAD_MORE_AUTO_RETRIES: int = 2

    # Reconciler delete tombstones
    TOMBSTONE_TTL_SECONDS: float = 600.0
    TOMBSTONE_MAX: int = 4096

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
