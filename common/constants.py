"""Project-wide constants (RPC method names, storage layout, default limits)."""

WORKER_CONFIG_ENV_VAR: str = "S3CACHE_WORKER_CONFIG"

RPC_PATH: str = "/rpc"
RPC_VERSION: str = "2.0"
RPC_SERVICE_NAME: str = "S3Service"

PING_METHOD: str = f"{RPC_SERVICE_NAME}.Ping"
DOWNLOAD_METHOD: str = f"{RPC_SERVICE_NAME}.Download"
UPLOAD_METHOD: str = f"{RPC_SERVICE_NAME}.Upload"

SOCKET_FILE_PREFIX: str = "s3cache-"

DEFAULT_MAX_DOWNLOAD_CONCURRENCY: int = 500
DEFAULT_MAX_UPLOAD_CONCURRENCY: int = 500
DEFAULT_CHUNK_COUNT: int = 10

WORKER_STARTUP_TIMEOUT_SECONDS: float = 5.0
WORKER_PING_INTERVAL_SECONDS: float = 0.1
WORKER_STOP_GRACE_SECONDS: float = 3.0

PROGRESS_INTERVAL_SECONDS: float = 1.0
TAR_OVERHEAD_FACTOR: float = 1.02  # tar headers and padding on top of file sizes

STREAM_PIECE_SIZE_BYTES: int = 1024 * 1024  # 1 MiB copy buffer

METADATA_PREFIX: str = "metadata"
ARCHIVES_PREFIX: str = "archives"

CYCLE_SENTINEL: str = "<recursive>"
