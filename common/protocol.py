"""Shared RPC message definitions for the local worker channel (JSON-RPC 2.0)."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json

from common.constants import RPC_VERSION


@dataclass
class RpcRequest:
    """JSON-RPC request envelope."""
    method: str
    id: int
    params: List[Dict[str, Any]] = field(default_factory=lambda: [{}])
    jsonrpc: str = RPC_VERSION

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'jsonrpc': self.jsonrpc,
            'method': self.method,
            'params': self.params,
            'id': self.id
        }).encode('utf-8')

    @property
    def first_param(self) -> Dict[str, Any]:
        """The single positional parameter object carried by every method."""
        if self.params and isinstance(self.params[0], dict):
            return self.params[0]
        return {}


@dataclass
class RpcResponse:
    """JSON-RPC response envelope. Exactly one of result/error is set."""
    id: Optional[int]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'result': self.result, 'error': self.error, 'id': self.id}

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps(self.to_dict()).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'RpcResponse':
        """Deserialize from JSON bytes."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("response is not a JSON object")
        error = obj.get('error')
        if error is not None and not isinstance(error, str):
            error = json.dumps(error)
        return cls(id=obj.get('id'), result=obj.get('result'), error=error)


@dataclass
class PingResponse:
    """Result of S3Service.Ping."""
    message: str = "Pong"

    def to_dict(self) -> Dict[str, Any]:
        return {'message': self.message}


@dataclass
class DownloadRequest:
    """Parameters of S3Service.Download."""
    object_path: str
    output_path: str
    expected_checksum: Optional[str] = None
    decompress: bool = False
    untar: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'objectPath': self.object_path,
            'expectedChecksum': self.expected_checksum,
            'outputPath': self.output_path,
            'decompress': self.decompress,
            'untar': self.untar
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'DownloadRequest':
        """
        Build from wire params.

        Raises:
            ValueError: If a required field is missing
        """
        if not obj.get('objectPath') or not obj.get('outputPath'):
            raise ValueError("Download requires objectPath and outputPath")
        return cls(
            object_path=obj['objectPath'],
            output_path=obj['outputPath'],
            expected_checksum=obj.get('expectedChecksum') or None,
            decompress=bool(obj.get('decompress', False)),
            untar=bool(obj.get('untar', False))
        )


@dataclass
class DownloadResponse:
    """Result of S3Service.Download. downloaded=False is a cache miss."""
    downloaded: bool

    def to_dict(self) -> Dict[str, Any]:
        return {'downloaded': self.downloaded}

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'DownloadResponse':
        return cls(downloaded=bool(obj.get('downloaded', False)))


@dataclass
class UploadRequest:
    """Parameters of S3Service.Upload."""
    object_path: str
    input_path: str
    compress: bool = False
    create_tar: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'objectPath': self.object_path,
            'inputPath': self.input_path,
            'compress': self.compress,
            'createTar': self.create_tar
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'UploadRequest':
        """
        Build from wire params.

        Raises:
            ValueError: If a required field is missing
        """
        if not obj.get('objectPath') or not obj.get('inputPath'):
            raise ValueError("Upload requires objectPath and inputPath")
        return cls(
            object_path=obj['objectPath'],
            input_path=obj['inputPath'],
            compress=bool(obj.get('compress', False)),
            create_tar=bool(obj.get('createTar', False))
        )


@dataclass
class UploadResponse:
    """Result of S3Service.Upload. uploaded=False means the object already existed."""
    uploaded: bool

    def to_dict(self) -> Dict[str, Any]:
        return {'uploaded': self.uploaded}

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'UploadResponse':
        return cls(uploaded=bool(obj.get('uploaded', False)))
