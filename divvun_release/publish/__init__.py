"""Package publishing."""

from .adapters import (
    CommandUploadAdapter,
    HttpRegistryAdapter,
    NoOpAdapter,
    UploadAdapter,
    UploadRequest,
    build_adapter,
)
from .publisher import Publisher

__all__ = [
    "CommandUploadAdapter",
    "HttpRegistryAdapter",
    "NoOpAdapter",
    "Publisher",
    "UploadAdapter",
    "UploadRequest",
    "build_adapter",
]
