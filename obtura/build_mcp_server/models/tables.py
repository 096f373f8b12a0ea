"""
Relational schema read and updated by the quota gatekeeper.
"""

from typing import Optional

from sqlalchemy import Float, ForeignKey, Integer, String, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from obtura.build_mcp_server.models.quota import BuildQuota


class Base(DeclarativeBase):
    pass


class BuildQuotaPlan(Base):
    """Limits of one subscription plan."""

    __tablename__ = "build_quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_name: Mapped[str] = mapped_column(String(50), unique=True, index=True)

    max_concurrent_builds: Mapped[int] = mapped_column(Integer, default=1)
    max_build_duration_minutes: Mapped[int] = mapped_column(Integer, default=10)
    max_build_size_mb: Mapped[int] = mapped_column(Integer, default=500)

    max_builds_per_hour: Mapped[int] = mapped_column(Integer, default=5)
    max_builds_per_day: Mapped[int] = mapped_column(Integer, default=20)
    max_builds_per_month: Mapped[int] = mapped_column(Integer, default=100)

    cpu_cores: Mapped[float] = mapped_column(Float, default=1.0)
    memory_gb: Mapped[int] = mapped_column(Integer, default=1)
    disk_space_gb: Mapped[int] = mapped_column(Integer, default=2)

    max_services: Mapped[int] = mapped_column(Integer, default=2)
    max_build_logs_mb: Mapped[int] = mapped_column(Integer, default=10)
    max_artifact_size_gb: Mapped[int] = mapped_column(Integer, default=1)
    log_retention_days: Mapped[int] = mapped_column(Integer, default=7)

    def to_quota(self) -> BuildQuota:
        return BuildQuota(
            plan_name=self.plan_name,
            max_concurrent_builds=self.max_concurrent_builds,
            max_build_duration_minutes=self.max_build_duration_minutes,
            max_build_size_mb=self.max_build_size_mb,
            max_builds_per_hour=self.max_builds_per_hour,
            max_builds_per_day=self.max_builds_per_day,
            max_builds_per_month=self.max_builds_per_month,
            cpu_cores=self.cpu_cores,
            memory_gb=self.memory_gb,
            disk_space_gb=self.disk_space_gb,
            max_services=self.max_services,
            max_build_logs_mb=self.max_build_logs_mb,
            max_artifact_size_gb=self.max_artifact_size_gb,
            log_retention_days=self.log_retention_days,
        )


class Subscription(Base):
    """The columns of a tenant subscription this service reads."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("build_quotas.id"))
    status: Mapped[str] = mapped_column(String(20), default="active")


class BuildUsage(Base):
    """Per-tenant build counters and the time windows they count."""

    __tablename__ = "build_usage"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    builds_this_hour: Mapped[int] = mapped_column(Integer, default=0)
    builds_today: Mapped[int] = mapped_column(Integer, default=0)
    builds_this_month: Mapped[int] = mapped_column(Integer, default=0)
    concurrent_builds: Mapped[int] = mapped_column(Integer, default=0)

    # Window keys: YYYYMMDDHH, YYYYMMDD and YYYYMM
    hour_window: Mapped[str] = mapped_column(String(10), default="")
    day_window: Mapped[str] = mapped_column(String(8), default="")
    month_window: Mapped[str] = mapped_column(String(6), default="")


DEFAULT_PLANS = [
    dict(plan_name="starter", max_concurrent_builds=1, max_build_duration_minutes=15,
         max_build_size_mb=500, max_builds_per_hour=8, max_builds_per_day=30,
         max_builds_per_month=100, cpu_cores=1.0, memory_gb=2, disk_space_gb=5,
         max_services=3, max_build_logs_mb=25, max_artifact_size_gb=5, log_retention_days=7),
    dict(plan_name="team", max_concurrent_builds=3, max_build_duration_minutes=30,
         max_build_size_mb=1024, max_builds_per_hour=25, max_builds_per_day=100,
         max_builds_per_month=500, cpu_cores=2.0, memory_gb=4, disk_space_gb=10,
         max_services=8, max_build_logs_mb=50, max_artifact_size_gb=10, log_retention_days=14),
    dict(plan_name="business", max_concurrent_builds=5, max_build_duration_minutes=45,
         max_build_size_mb=2048, max_builds_per_hour=50, max_builds_per_day=200,
         max_builds_per_month=1000, cpu_cores=4.0, memory_gb=8, disk_space_gb=25,
         max_services=15, max_build_logs_mb=100, max_artifact_size_gb=25, log_retention_days=30),
    dict(plan_name="enterprise", max_concurrent_builds=15, max_build_duration_minutes=120,
         max_build_size_mb=4096, max_builds_per_hour=100, max_builds_per_day=500,
         max_builds_per_month=5000, cpu_cores=8.0, memory_gb=16, disk_space_gb=100,
         max_services=50, max_build_logs_mb=500, max_artifact_size_gb=100, log_retention_days=90),
]


def create_schema(engine: Engine) -> None:
    """Creates the quota tables if they do not exist."""
    Base.metadata.create_all(engine)


def seed_default_plans(session_factory: sessionmaker) -> int:
    """
    Inserts the default plans that are missing.

    Returns:
        Number of plans inserted
    """
    inserted = 0
    with session_factory() as session, session.begin():
        existing = set(session.scalars(select(BuildQuotaPlan.plan_name)))
        for plan in DEFAULT_PLANS:
            if plan["plan_name"] not in existing:
                session.add(BuildQuotaPlan(**plan))
                inserted += 1
    return inserted


def find_plan(session, plan_name: str) -> Optional[BuildQuotaPlan]:
    return session.scalars(
        select(BuildQuotaPlan).where(BuildQuotaPlan.plan_name == plan_name)
    ).first()
