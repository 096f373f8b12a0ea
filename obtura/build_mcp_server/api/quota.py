"""
Quota gatekeeper deciding whether a tenant may start a build.

Admission and release are single conditional UPDATE statements, so the
database row is the only shared state between concurrent callers.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from obtura.build_mcp_server.models.quota import (
    FREE_TIER_QUOTA,
    LIMIT_CONCURRENT,
    LIMIT_UNAVAILABLE,
    AdmissionResult,
    BuildQuota,
    UsageCounters,
)
from obtura.build_mcp_server.models.tables import BuildQuotaPlan, BuildUsage, Subscription, find_plan

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def window_keys(now: datetime):
    """Hour, day and month window keys of an instant."""
    return now.strftime("%Y%m%d%H"), now.strftime("%Y%m%d"), now.strftime("%Y%m")


def _counters(row: Optional[BuildUsage], hour: str, day: str, month: str) -> UsageCounters:
    if row is None:
        return UsageCounters(hour_window=hour, day_window=day, month_window=month)
    return UsageCounters(
        builds_this_hour=row.builds_this_hour if row.hour_window == hour else 0,
        builds_today=row.builds_today if row.day_window == day else 0,
        builds_this_month=row.builds_this_month if row.month_window == month else 0,
        concurrent_builds=row.concurrent_builds,
        hour_window=hour,
        day_window=day,
        month_window=month,
    )


class QuotaGatekeeper:
    """Admits and releases builds against per-tenant plan limits."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = _utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def resolve_quota(self, tenant_id: str, plan_override: Optional[str] = None) -> BuildQuota:
        """
        Resolves the limits that apply to a tenant.

        An explicit plan override wins, then the plan of the tenant's active
        subscription, then the free tier.

        Raises:
            SQLAlchemyError: If the plan tables cannot be read
        """
        with self._session_factory() as session:
            if plan_override:
                plan = find_plan(session, plan_override)
                if plan is not None:
                    return plan.to_quota()
                logger.warning(f"Unknown plan override {plan_override} for tenant {tenant_id}")

            plan = session.scalars(
                select(BuildQuotaPlan)
                .join(Subscription, Subscription.plan_id == BuildQuotaPlan.id)
                .where(Subscription.tenant_id == tenant_id, Subscription.status == "active")
                .order_by(Subscription.id.desc())
                .limit(1)
            ).first()
            if plan is not None:
                return plan.to_quota()

        logger.debug(f"No active subscription for tenant {tenant_id}, using free tier")
        return FREE_TIER_QUOTA

    def _ensure_usage_row(self, tenant_id: str) -> None:
        try:
            with self._session_factory() as session, session.begin():
                if session.get(BuildUsage, tenant_id) is None:
                    session.add(BuildUsage(tenant_id=tenant_id))
        except IntegrityError:
            # Inserted by a concurrent admission
            logger.debug(f"Usage row for tenant {tenant_id} already exists")

    @staticmethod
    def _roll_windows(session: Session, tenant_id: str, hour: str, day: str, month: str) -> None:
        for counter, window, key in (
            ("builds_this_hour", "hour_window", hour),
            ("builds_today", "day_window", day),
            ("builds_this_month", "month_window", month),
        ):
            session.execute(
                update(BuildUsage)
                .where(BuildUsage.tenant_id == tenant_id, getattr(BuildUsage, window) != key)
                .values({counter: 0, window: key})
                .execution_options(synchronize_session=False)
            )

    @staticmethod
    def _read_counters(session: Session, tenant_id: str, hour: str, day: str, month: str) -> UsageCounters:
        row = session.scalars(
            select(BuildUsage)
            .where(BuildUsage.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        ).first()
        return _counters(row, hour, day, month)

    def admit(
        self,
        tenant_id: str,
        build_context_size: int,
        service_count: int,
        plan_override: Optional[str] = None,
    ) -> AdmissionResult:
        """
        Checks every limit and, if the build fits, counts it.

        Limits are evaluated in a fixed order: hourly, daily, monthly,
        concurrent, build size, service count. Counters are only incremented
        when the build is admitted. Any database failure rejects the build.

        Args:
            tenant_id: Tenant starting the build
            build_context_size: Total size of the build context in bytes
            service_count: Number of applications that will be built
            plan_override: Plan name to use instead of the subscription's plan

        Returns:
            AdmissionResult
        """
        quota = FREE_TIER_QUOTA
        try:
            quota = self.resolve_quota(tenant_id, plan_override)
            hour, day, month = window_keys(self._clock())
            self._ensure_usage_row(tenant_id)

            with self._session_factory() as session, session.begin():
                self._roll_windows(session, tenant_id, hour, day, month)
                usage = self._read_counters(session, tenant_id, hour, day, month)

                limit = quota.first_violation(usage, build_context_size, service_count)
                if limit is not None:
                    logger.info(f"Rejected build for tenant {tenant_id}: {limit} limit")
                    return AdmissionResult.rejected(limit, quota, usage)

                result = session.execute(
                    update(BuildUsage)
                    .where(
                        BuildUsage.tenant_id == tenant_id,
                        BuildUsage.hour_window == hour,
                        BuildUsage.day_window == day,
                        BuildUsage.month_window == month,
                        BuildUsage.builds_this_hour < quota.max_builds_per_hour,
                        BuildUsage.builds_today < quota.max_builds_per_day,
                        BuildUsage.builds_this_month < quota.max_builds_per_month,
                        BuildUsage.concurrent_builds < quota.max_concurrent_builds,
                    )
                    .values(
                        builds_this_hour=BuildUsage.builds_this_hour + 1,
                        builds_today=BuildUsage.builds_today + 1,
                        builds_this_month=BuildUsage.builds_this_month + 1,
                        concurrent_builds=BuildUsage.concurrent_builds + 1,
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount == 0:
                    # Lost to a concurrent admission between the read and the update
                    usage = self._read_counters(session, tenant_id, hour, day, month)
                    limit = quota.first_violation(usage, build_context_size, service_count)
                    logger.info(f"Rejected build for tenant {tenant_id} after concurrent admission")
                    return AdmissionResult.rejected(limit or LIMIT_CONCURRENT, quota, usage)

                usage = self._read_counters(session, tenant_id, hour, day, month)
        except SQLAlchemyError as e:
            logger.error(f"Quota state unavailable for tenant {tenant_id}: {e}", exc_info=True)
            return AdmissionResult.rejected(LIMIT_UNAVAILABLE, quota)

        logger.info(
            f"Admitted build for tenant {tenant_id} on plan {quota.plan_name} "
            f"({usage.concurrent_builds}/{quota.max_concurrent_builds} concurrent)"
        )
        return AdmissionResult(admitted=True, quota=quota, usage=usage)

    def release(self, tenant_id: str) -> bool:
        """
        Frees the concurrent build slot taken by admit.

        Returns:
            True if a slot was released, False if none was held or the
            database could not be reached
        """
        try:
            with self._session_factory() as session, session.begin():
                result = session.execute(
                    update(BuildUsage)
                    .where(BuildUsage.tenant_id == tenant_id, BuildUsage.concurrent_builds > 0)
                    .values(concurrent_builds=BuildUsage.concurrent_builds - 1)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to release build slot for tenant {tenant_id}: {e}", exc_info=True)
            return False

        if result.rowcount == 0:
            logger.warning(f"No concurrent build slot held by tenant {tenant_id}")
            return False
        logger.debug(f"Released build slot for tenant {tenant_id}")
        return True

    def get_usage(self, tenant_id: str) -> UsageCounters:
        """
        Reads a tenant's counters as they apply now.

        Counters of windows that have passed read as zero.

        Raises:
            SQLAlchemyError: If the usage table cannot be read
        """
        hour, day, month = window_keys(self._clock())
        with self._session_factory() as session:
            row = session.get(BuildUsage, tenant_id)
            return _counters(row, hour, day, month)
