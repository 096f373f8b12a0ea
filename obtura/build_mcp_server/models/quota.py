"""
Models for build quotas and usage accounting.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from obtura.build_mcp_server.utils.errors import QuotaRejected

MB = 1024 * 1024

# Machine keys of the limits, in the order admission evaluates them
LIMIT_HOURLY = "hourly"
LIMIT_DAILY = "daily"
LIMIT_MONTHLY = "monthly"
LIMIT_CONCURRENT = "concurrent"
LIMIT_BUILD_SIZE = "build_size"
LIMIT_SERVICES = "services"
LIMIT_UNAVAILABLE = "unavailable"

LIMIT_MESSAGES = {
    LIMIT_HOURLY: "Hourly build limit exceeded",
    LIMIT_DAILY: "Daily build limit exceeded",
    LIMIT_MONTHLY: "Monthly build limit exceeded",
    LIMIT_CONCURRENT: "Concurrent build limit exceeded",
    LIMIT_BUILD_SIZE: "Build size limit exceeded",
    LIMIT_SERVICES: "Service count limit exceeded",
    LIMIT_UNAVAILABLE: "Quota state is unavailable",
}


class UsageCounters(BaseModel):
    """Snapshot of a tenant's build counters and the windows they belong to."""

    builds_this_hour: int = 0
    builds_today: int = 0
    builds_this_month: int = 0
    concurrent_builds: int = 0

    hour_window: str = ""
    day_window: str = ""
    month_window: str = ""


class BuildQuota(BaseModel):
    """Limits that apply to one tenant at one instant."""

    model_config = ConfigDict(frozen=True)

    plan_name: str = Field(description="Plan the limits were resolved from")

    max_concurrent_builds: int
    max_build_duration_minutes: int
    max_build_size_mb: int

    max_builds_per_hour: int
    max_builds_per_day: int
    max_builds_per_month: int

    cpu_cores: float
    memory_gb: int
    disk_space_gb: int

    max_services: int
    max_build_logs_mb: int
    max_artifact_size_gb: int
    log_retention_days: int

    @property
    def max_build_duration_seconds(self) -> int:
        return self.max_build_duration_minutes * 60

    @property
    def max_build_size_bytes(self) -> int:
        return self.max_build_size_mb * MB

    @property
    def max_build_log_bytes(self) -> int:
        return self.max_build_logs_mb * MB

    def first_violation(
        self, usage: UsageCounters, build_context_size: int, service_count: int
    ) -> Optional[str]:
        """
        Finds the first limit a new build would violate.

        Args:
            usage: Current counters, already rolled to the current windows
            build_context_size: Size of the build context in bytes
            service_count: Number of applications in the build

        Returns:
            The limit key, or None when the build fits
        """
        if usage.builds_this_hour >= self.max_builds_per_hour:
            return LIMIT_HOURLY
        if usage.builds_today >= self.max_builds_per_day:
            return LIMIT_DAILY
        if usage.builds_this_month >= self.max_builds_per_month:
            return LIMIT_MONTHLY
        if usage.concurrent_builds >= self.max_concurrent_builds:
            return LIMIT_CONCURRENT
        if build_context_size > self.max_build_size_bytes:
            return LIMIT_BUILD_SIZE
        if service_count > self.max_services:
            return LIMIT_SERVICES
        return None


FREE_TIER_QUOTA = BuildQuota(
    plan_name="free",
    max_concurrent_builds=1,
    max_build_duration_minutes=10,
    max_build_size_mb=250,
    max_builds_per_hour=3,
    max_builds_per_day=10,
    max_builds_per_month=50,
    cpu_cores=1.0,
    memory_gb=1,
    disk_space_gb=2,
    max_services=2,
    max_build_logs_mb=10,
    max_artifact_size_gb=1,
    log_retention_days=7,
)


class AdmissionResult(BaseModel):
    """Outcome of an admission request."""

    admitted: bool
    reason: Optional[str] = None
    limit: Optional[str] = None
    quota: BuildQuota
    usage: Optional[UsageCounters] = None

    @classmethod
    def rejected(
        cls, limit: str, quota: BuildQuota, usage: Optional[UsageCounters] = None
    ) -> "AdmissionResult":
        return cls(
            admitted=False, reason=LIMIT_MESSAGES[limit], limit=limit, quota=quota, usage=usage
        )

    def raise_for_rejection(self, tenant_id: Optional[str] = None) -> None:
        """Raises QuotaRejected naming the exceeded limit if the build was not admitted."""
        if not self.admitted:
            raise QuotaRejected(self.reason or "Build not admitted", limit=self.limit, tenant_id=tenant_id)
