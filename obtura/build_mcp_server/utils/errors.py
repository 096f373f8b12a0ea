"""
Error types raised by the build pipeline.
"""

from typing import Optional


class BuildServiceError(Exception):
    """Base class for build pipeline errors, carrying the build context."""

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        build_id: Optional[str] = None,
        app_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id
        self.build_id = build_id
        self.app_path = app_path

    def with_context(
        self,
        tenant_id: Optional[str] = None,
        build_id: Optional[str] = None,
        app_path: Optional[str] = None,
    ) -> "BuildServiceError":
        """Fills in context fields that are not set yet and returns self."""
        self.tenant_id = self.tenant_id or tenant_id
        self.build_id = self.build_id or build_id
        self.app_path = self.app_path or app_path
        return self

    def __str__(self) -> str:
        context = [
            f"{key}={value}"
            for key, value in (
                ("tenant", self.tenant_id),
                ("build", self.build_id),
                ("path", self.app_path),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class DetectionFailure(BuildServiceError):
    """No recognized technology anywhere in the checkout."""


class GenerationError(BuildServiceError):
    """A build file could not be generated or written."""


class ServiceNameCollision(GenerationError):
    """Two application paths normalize to the same service name."""


class ConfigPatchError(GenerationError):
    """An application config file could not be patched."""


class QuotaRejected(BuildServiceError):
    """The build was not admitted."""

    def __init__(self, message: str, limit: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit


class EngineUnavailable(BuildServiceError):
    """The container engine cannot be reached."""


class EngineBuildFailed(BuildServiceError):
    """The container engine reported a build error."""


class EnginePushFailed(BuildServiceError):
    """The registry rejected a push or could not be reached."""


class BuildCancelled(BuildServiceError):
    """The caller cancelled the build or its deadline passed."""


class StorageError(BuildServiceError):
    """The object store could not complete a request."""


class ArtifactNotFound(StorageError):
    """No manifest is stored for the tenant and build."""
