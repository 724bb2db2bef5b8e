"""Target communications platform client."""

from src.bridge.target.client import (
    HttpTargetClient,
    TargetConflictError,
    TargetPlatformClient,
    TargetPlatformError,
)

__all__ = [
    "HttpTargetClient",
    "TargetConflictError",
    "TargetPlatformClient",
    "TargetPlatformError",
]
