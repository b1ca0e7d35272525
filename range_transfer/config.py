import dataclasses

import dotenv
import httpx

from range_transfer.utils import env
from range_transfer.utils import env_bool


dotenv.load_dotenv()


# Largest window a single range upload/download may cover.
FILE_RANGE_MAX_SIZE_BYTES = 4 * 1024 * 1024
# Largest object the store accepts.
FILE_MAX_SIZE_BYTES = 1024 * 1024 * 1024 * 1024

DEFAULT_HIGH_LEVEL_PARALLELISM = 5
DEFAULT_MAX_DOWNLOAD_RETRY_REQUESTS = 5


@dataclasses.dataclass
class Config:
    """Transfer engine configuration settings."""

    # Logging
    log_level: str = env("LOG_LEVEL:INFO")
    loki_url: str = env("LOKI_URL:", convert=str)
    loki_enabled: bool = env("LOKI_ENABLED:false", convert=env_bool)
    environment: str = env("ENVIRONMENT:development")

    # Remote object store
    endpoint_url: str = env("RANGE_TRANSFER_ENDPOINT_URL:", convert=str)
    verify_ssl: bool = env("RANGE_TRANSFER_VERIFY_SSL:true", convert=env_bool)

    # High level transfer defaults
    range_size_bytes: int = env(f"RANGE_TRANSFER_RANGE_SIZE_BYTES:{FILE_RANGE_MAX_SIZE_BYTES}", convert=int)
    parallelism: int = env(f"RANGE_TRANSFER_PARALLELISM:{DEFAULT_HIGH_LEVEL_PARALLELISM}", convert=int)
    max_download_retry_requests: int = env(
        f"RANGE_TRANSFER_MAX_DOWNLOAD_RETRY_REQUESTS:{DEFAULT_MAX_DOWNLOAD_RETRY_REQUESTS}", convert=int
    )

    # HTTP transport retry settings (connection errors and 5xx only)
    http_max_retries: int = env("RANGE_TRANSFER_HTTP_MAX_RETRIES:3", convert=int)
    http_retry_base_ms: int = env("RANGE_TRANSFER_HTTP_RETRY_BASE_MS:500", convert=int)
    http_retry_max_ms: int = env("RANGE_TRANSFER_HTTP_RETRY_MAX_MS:5000", convert=int)
    http_connect_timeout_seconds: float = env("RANGE_TRANSFER_HTTP_CONNECT_TIMEOUT_SECONDS:10.0", convert=float)
    http_read_timeout_seconds: float = env("RANGE_TRANSFER_HTTP_READ_TIMEOUT_SECONDS:300.0", convert=float)

    @property
    def httpx_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.http_read_timeout_seconds, connect=self.http_connect_timeout_seconds)


def get_config() -> Config:
    """Get transfer configuration."""
    cfg = Config()

    if not 0 < cfg.range_size_bytes <= FILE_RANGE_MAX_SIZE_BYTES:
        raise ValueError(
            f"RANGE_TRANSFER_RANGE_SIZE_BYTES must be > 0 and <= {FILE_RANGE_MAX_SIZE_BYTES}, got {cfg.range_size_bytes}"
        )
    if cfg.parallelism < 1:
        raise ValueError(f"RANGE_TRANSFER_PARALLELISM must be >= 1, got {cfg.parallelism}")
    if cfg.max_download_retry_requests < 0:
        raise ValueError(
            f"RANGE_TRANSFER_MAX_DOWNLOAD_RETRY_REQUESTS must be >= 0, got {cfg.max_download_retry_requests}"
        )
    if cfg.http_max_retries < 0:
        raise ValueError(f"RANGE_TRANSFER_HTTP_MAX_RETRIES must be >= 0, got {cfg.http_max_retries}")

    # Strip a trailing slash so object paths join cleanly
    object.__setattr__(cfg, "endpoint_url", (cfg.endpoint_url or "").strip().rstrip("/"))

    return cfg
