"""FastAPI application exposing S3Service over JSON-RPC (POST /rpc)."""

import time

from fastapi import FastAPI, Request
from pydantic import ValidationError

from common.constants import RPC_PATH
from common.logging_config import get_logger
from common.protocol import RpcRequest
from worker.schemas import RpcRequestBody, RpcResponseBody
from worker.service import S3Service

logger = get_logger(__name__)


def create_app(service: S3Service) -> FastAPI:
    """
    Create the worker's RPC application.

    Every well-formed request is answered with HTTP 200 and a JSON-RPC body;
    method failures travel in the error field.

    Args:
        service: S3Service handling the calls
    """
    app = FastAPI(
        title="S3 Cache Transfer Worker",
        description="Local-only transfer service for the artifact cache",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )
    app.state.service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.debug(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s"
        )
        return response

    @app.post(RPC_PATH, response_model=RpcResponseBody)
    async def rpc(request: Request) -> RpcResponseBody:
        raw = await request.body()
        try:
            body = RpcRequestBody.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Rejected malformed RPC request: {e.error_count()} error(s)")
            return RpcResponseBody(id=None, error=f"invalid request: {e.errors()[0]['msg']}")

        response = await service.handle(RpcRequest(
            method=body.method,
            id=body.id,
            params=body.params,
            jsonrpc=body.jsonrpc
        ))
        return RpcResponseBody(**response.to_dict())

    @app.on_event("shutdown")
    async def shutdown_event():
        service.close()
        logger.info("Transfer worker shut down")

    return app
