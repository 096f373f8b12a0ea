"""
Build module for the Obtura Build MCP Server.
This module provides tools and prompts for building and pushing images.
"""
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from obtura.build_mcp_server.api.build import build_checkout
from obtura.build_mcp_server.api.services import BuildServices
from obtura.build_mcp_server.utils.security import PERMISSION_WRITE, secure_tool, validate_file_path


def register_module(mcp: FastMCP, services: BuildServices, config: Dict[str, Any]) -> None:
    """Register build module tools and prompts with the MCP server."""

    @mcp.tool(name="build_checkout")
    @secure_tool(config, PERMISSION_WRITE, "build_checkout")
    async def mcp_build_checkout(
        checkout_path: str = Field(
            ...,
            description="Absolute path to the checkout to build",
        ),
        tenant_id: str = Field(
            ...,
            description="Tenant the build is accounted to",
        ),
        build_id: str = Field(
            ...,
            description="Unique build identifier, used as the image tag",
        ),
        project_id: Optional[str] = Field(
            default=None,
            description="Project the images belong to (defaults to the tenant)",
        ),
        plan: Optional[str] = Field(
            default=None,
            description="Plan name to apply instead of the tenant's subscription plan",
        ),
        timeout_seconds: Optional[int] = Field(
            default=None,
            description="Deadline for the whole build; the plan's duration limit also applies",
        ),
    ) -> Dict[str, Any]:
        """
        Builds and pushes one image per application of a checkout.

        This tool checks the tenant's build quota, writes the build files,
        builds every application with the container engine, pushes the images
        to the configured registry and stores a build manifest.

        USAGE INSTRUCTIONS:
        1. Run analyze_checkout first to confirm what will be built
        2. Provide the checkout path, tenant and a unique build identifier
        3. Check the status: succeeded, partial, failed or rejected

        A rejected build names the limit that was hit (hourly, daily, monthly,
        concurrent, build_size, services or unavailable). One failing
        application does not stop the others; its failure is listed with the
        stage (generate, build or push) it failed in.

        Parameters:
            checkout_path: Absolute path to the checkout
            tenant_id: Tenant the build is accounted to
            build_id: Unique build identifier
            project_id: Project the images belong to
            plan: Plan name override
            timeout_seconds: Deadline for the whole build

        Returns:
            Dictionary containing the build result, pushed images and engine log
        """
        return await build_checkout(
            validate_file_path(checkout_path),
            tenant_id,
            build_id,
            services,
            project_id=project_id,
            plan_override=plan,
            timeout_seconds=timeout_seconds,
        )

    @mcp.prompt("build image")
    def build_image_prompt():
        """User wants to build a container image"""
        return ["analyze_checkout", "build_checkout"]

    @mcp.prompt("build and push")
    def build_and_push_prompt():
        """User wants to build and publish images"""
        return ["build_checkout"]

    @mcp.prompt("ship it")
    def ship_it_prompt():
        """User wants to build and publish an application"""
        return ["analyze_checkout", "build_checkout"]

    @mcp.prompt("push to registry")
    def push_to_registry_prompt():
        """User wants images pushed to the registry"""
        return ["build_checkout"]
