"""
Models for project structure detection.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class DetectedApplication(BaseModel):
    """One independently buildable application found in a checkout."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Recognized technology, e.g. 'Next.js' or 'Node.js'")

    path: str = Field(
        default=".", description="Application root relative to the checkout, '.' for the root"
    )

    runtime: str = Field(description="Base image used to build and run the application")

    build_command: str = Field(description="Shell command that produces a runnable artifact")

    port: int = Field(description="Port the technology listens on by convention")

    is_static: bool = Field(
        default=False, description="Whether the output is static files served by nginx"
    )

    output_directory: str = Field(
        default=".", description="Directory holding built static assets"
    )

    start_command: Optional[str] = Field(
        default=None, description="Command that starts the application process"
    )

    env_vars: Dict[str, str] = Field(
        default_factory=dict, description="Technology-specific default environment variables"
    )

    health_check: Optional[str] = Field(
        default=None, description="HTTP path probed to check the application is healthy"
    )

    def with_path(self, path: str) -> "DetectedApplication":
        """Returns a copy of the application rooted at another relative path."""
        return self.model_copy(update={"path": path})


class DatabaseDependency(BaseModel):
    """A datastore the checkout talks to."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    required: bool = True


class ServiceDependency(BaseModel):
    """A supporting service (queue, object storage) the checkout talks to."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str
    required: bool = True


class ArchitectureInfo(BaseModel):
    """Datastores and services inferred from declared dependencies."""

    databases: List[DatabaseDependency] = Field(default_factory=list)

    services: List[ServiceDependency] = Field(default_factory=list)

    @property
    def has_database(self) -> bool:
        return bool(self.databases)

    def has(self, dependency_type: str) -> bool:
        """Checks whether a database or service of the given type was found."""
        return any(d.type == dependency_type for d in self.databases) or any(
            s.type == dependency_type for s in self.services
        )


class ProjectStructure(BaseModel):
    """Result of a full detection pass over a checkout."""

    applications: List[DetectedApplication] = Field(
        description="Applications in discovery order, checkout root first"
    )

    architecture: ArchitectureInfo = Field(default_factory=ArchitectureInfo)

    @field_validator("applications")
    @classmethod
    def _require_application(cls, value: List[DetectedApplication]) -> List[DetectedApplication]:
        if not value:
            raise ValueError("a project structure needs at least one application")
        return value

    @computed_field
    @property
    def is_monorepo(self) -> bool:
        return len(self.applications) > 1
