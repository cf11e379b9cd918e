"""Exception taxonomy shared by every stage of the pipeline."""

from __future__ import annotations

from typing import Optional


class CertHelperError(ValueError):
    """Base class for all errors raised on purpose by cert_helper."""


class ConfigurationError(CertHelperError):
    """A required parameter, file or directory is missing or invalid.

    Raised before any state on disk has been touched.
    """


class SigningError(CertHelperError):
    """A certificate request could not be signed.

    Attributes:
        node (str | None): Path-safe name of the offending node, when known.
    """

    def __init__(self, message: str, node: Optional[str] = None):
        if node:
            message = f"{node}: {message}"
        super().__init__(message)
        self.node = node


class EmptyBatchError(CertHelperError):
    """A batch finished without producing a single artifact."""
