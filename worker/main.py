"""Entry point for the transfer worker process.
Reads its JSON config from the environment and serves S3Service on a unix socket.
"""

import os
import sys
from pathlib import Path

import uvicorn

from common.logging_config import setup_component_logging, setup_logging
from common.storage import S3ObjectStore, create_s3_client
from worker.config import InvalidWorkerConfigError, WorkerConfig
from worker.rpc_server import create_app
from worker.service import S3Service


def build_service(config: WorkerConfig) -> S3Service:
    """
    Create the S3Service for a configuration, sharing one boto3 client
    across buckets.
    """
    client = create_s3_client(
        region=config.region,
        profile=config.profile,
        endpoint_url=config.endpoint_url,
        max_pool_connections=config.max_download_concurrency + config.max_upload_concurrency
    )
    return S3Service(
        store_factory=lambda bucket: S3ObjectStore(client, bucket),
        default_bucket=config.bucket,
        max_download_concurrency=config.max_download_concurrency,
        max_upload_concurrency=config.max_upload_concurrency
    )


def main() -> None:
    """Bootstrap the transfer worker."""
    try:
        config = WorkerConfig.from_env()
    except InvalidWorkerConfigError as e:
        setup_logging('worker').error(f"Invalid worker configuration: {e}")
        sys.exit(1)

    socket_name = Path(config.endpoint_address).name
    logger = setup_component_logging(('worker', 'common'), config.log_level, correlation_id=socket_name)

    try:
        service = build_service(config)
    except Exception as e:
        logger.error(f"Failed to create storage client: {e}", exc_info=True)
        sys.exit(1)

    # A previous run may have left its socket behind.
    if os.path.exists(config.endpoint_address):
        os.remove(config.endpoint_address)

    logger.info(
        f"Transfer worker listening on {config.endpoint_address} "
        f"(downloads={config.max_download_concurrency}, uploads={config.max_upload_concurrency})"
    )
    uvicorn.run(
        create_app(service),
        uds=config.endpoint_address,
        log_level=config.log_level.lower(),
        access_log=False
    )


if __name__ == "__main__":
    main()
