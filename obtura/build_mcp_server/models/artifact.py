"""
Models for build artifacts and build results.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

BUILD_SUCCEEDED = "succeeded"
BUILD_PARTIAL = "partial"
BUILD_FAILED = "failed"
BUILD_REJECTED = "rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BuildArtifact(BaseModel):
    """Persisted record of one completed build."""

    tenant_id: str = Field(description="Tenant that owns the build")

    build_id: str = Field(description="Identifier of the build")

    image_tag: str = Field(description="Image reference of the primary application")

    images: Dict[str, str] = Field(
        default_factory=dict, description="Service name to pushed image reference"
    )

    files: Dict[str, str] = Field(
        default_factory=dict, description="Generated build files by checkout-relative path"
    )

    created_at: datetime = Field(default_factory=_utcnow)


class ApplicationFailure(BaseModel):
    """Why one application of a build did not produce an image."""

    path: str
    stage: str = Field(description="generate, build or push")
    error: str


class BuildResult(BaseModel):
    """Outcome of a full pipeline run."""

    tenant_id: str
    build_id: str
    status: str
    images: Dict[str, str] = Field(default_factory=dict)
    failures: List[ApplicationFailure] = Field(default_factory=list)
    artifact_key: Optional[str] = None
    storage_error: Optional[str] = None
    reason: Optional[str] = None
    limit: Optional[str] = None


class GenerationReport(BaseModel):
    """Build files written into a checkout."""

    files: List[str] = Field(
        default_factory=list, description="Checkout-relative paths that were written, sorted"
    )
    failures: List[ApplicationFailure] = Field(default_factory=list)
