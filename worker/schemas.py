"""Pydantic schemas for the JSON-RPC envelope served on /rpc."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from common.constants import RPC_VERSION


class RpcRequestBody(BaseModel):
    """Request envelope. params holds a single parameter object."""
    jsonrpc: str = RPC_VERSION
    method: str
    params: List[Any] = Field(default_factory=lambda: [{}])
    id: int


class RpcResponseBody(BaseModel):
    """Response envelope. Exactly one of result/error is non-null."""
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    id: Optional[int] = None
