"""
Quota module for the Obtura Build MCP Server.
This module provides tools for inspecting build quotas.
"""
import asyncio
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from obtura.build_mcp_server.api.services import BuildServices
from obtura.build_mcp_server.utils.security import validate_identifier


def register_module(mcp: FastMCP, services: BuildServices) -> None:
    """Register quota module tools and prompts with the MCP server."""

    @mcp.tool(name="get_build_quota")
    async def mcp_get_build_quota(
        tenant_id: str = Field(
            ...,
            description="Tenant whose quota to show",
        ),
        plan: Optional[str] = Field(
            default=None,
            description="Plan name to show instead of the tenant's subscription plan",
        ),
    ) -> Dict[str, Any]:
        """
        Shows the build limits of a tenant and how much of them is used.

        Counters of hours, days and months that have passed read as zero.

        Parameters:
            tenant_id: Tenant whose quota to show
            plan: Plan name override

        Returns:
            Dictionary containing the plan limits and current usage
        """
        validate_identifier(tenant_id, "Tenant ID")
        gatekeeper = services.gatekeeper
        quota = await asyncio.to_thread(gatekeeper.resolve_quota, tenant_id, plan)
        usage = await asyncio.to_thread(gatekeeper.get_usage, tenant_id)
        return {
            "tenant_id": tenant_id,
            "quota": quota.model_dump(),
            "usage": usage.model_dump(),
            "remaining": {
                "hourly": max(0, quota.max_builds_per_hour - usage.builds_this_hour),
                "daily": max(0, quota.max_builds_per_day - usage.builds_today),
                "monthly": max(0, quota.max_builds_per_month - usage.builds_this_month),
                "concurrent": max(0, quota.max_concurrent_builds - usage.concurrent_builds),
            },
        }

    @mcp.prompt("build quota")
    def build_quota_prompt():
        """User wants to know their build limits"""
        return ["get_build_quota"]

    @mcp.prompt("how many builds")
    def how_many_builds_prompt():
        """User wants to know how many builds are left"""
        return ["get_build_quota"]
