from __future__ import annotations

from typing import Optional


class IndexingError(Exception):
    """Base class for operation-level indexing failures."""


class ReadFailure(IndexingError):
    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        message = f"Could not read document {key}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PublishFailure(IndexingError):
    """
    The aggregated output could not be swapped into place. The previously
    published output is still intact, so callers may simply retry.
    """

    def __init__(self, target: str, reason: str = ""):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to publish output to {target}: {reason}" if reason else f"Failed to publish output to {target}")


class InvariantViolation(IndexingError):
    def __init__(self, message: str, key: Optional[str] = None):
        self.key = key
        super().__init__(message)
