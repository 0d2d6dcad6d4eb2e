from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for fatal build-pipeline errors.

    `diagnostic` holds the raw text the operator needs (resolver, compiler or
    docker output). It is surfaced verbatim, never summarized.
    """

    def __init__(self, message: str, *, diagnostic: str | None = None):
        super().__init__(message)
        self.diagnostic = diagnostic if diagnostic is not None else message


class DiscoveryError(BuildError):
    """Raised for malformed policy modules or an unusable policy root."""


class CodegenError(BuildError):
    """Raised when the aggregator source cannot be written."""


class ManifestError(BuildError):
    """Raised when the engine manifest cannot be read or written."""


class ManifestResolutionError(BuildError):
    """Raised when dependency resolution over the rewritten manifest fails."""


class CompileError(BuildError):
    """Raised when byte-compiling, link-checking or archiving the engine fails."""


class PackagingError(BuildError):
    """Raised when an attempted container image build fails."""
