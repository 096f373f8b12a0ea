"""
Artifacts module for the Obtura Build MCP Server.
This module provides tools for reading and deleting build manifests.
"""
import asyncio
from typing import Any, Dict

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from obtura.build_mcp_server.api.services import BuildServices
from obtura.build_mcp_server.utils.security import PERMISSION_WRITE, secure_tool


def register_module(mcp: FastMCP, services: BuildServices, config: Dict[str, Any]) -> None:
    """Register artifacts module tools and prompts with the MCP server."""

    @mcp.tool(name="get_build_artifact")
    async def mcp_get_build_artifact(
        tenant_id: str = Field(
            ...,
            description="Tenant that owns the build",
        ),
        build_id: str = Field(
            ...,
            description="Identifier of the build",
        ),
    ) -> Dict[str, Any]:
        """
        Gets the stored manifest of a completed build.

        The manifest lists the pushed image of every service and the build
        files that were generated for the build.

        Parameters:
            tenant_id: Tenant that owns the build
            build_id: Identifier of the build

        Returns:
            Dictionary containing the build manifest
        """
        artifact = await asyncio.to_thread(services.store.get, tenant_id, build_id)
        return artifact.model_dump(mode="json")

    @mcp.tool(name="list_build_artifacts")
    async def mcp_list_build_artifacts(
        tenant_id: str = Field(
            ...,
            description="Tenant whose builds to list",
        ),
    ) -> Dict[str, Any]:
        """
        Lists the stored build manifests of a tenant, newest first.

        Parameters:
            tenant_id: Tenant whose builds to list

        Returns:
            Dictionary containing the builds with their images
        """
        artifacts = await asyncio.to_thread(services.store.list, tenant_id)
        return {
            "tenant_id": tenant_id,
            "builds": [
                {
                    "build_id": artifact.build_id,
                    "image_tag": artifact.image_tag,
                    "images": artifact.images,
                    "created_at": artifact.created_at.isoformat(),
                }
                for artifact in artifacts
            ],
        }

    @mcp.tool(name="delete_build_artifact")
    @secure_tool(config, PERMISSION_WRITE, "delete_build_artifact")
    async def mcp_delete_build_artifact(
        tenant_id: str = Field(
            ...,
            description="Tenant that owns the build",
        ),
        build_id: str = Field(
            ...,
            description="Identifier of the build",
        ),
    ) -> Dict[str, Any]:
        """
        Deletes the stored manifest of a build.

        Pushed images are not removed from the registry.

        Parameters:
            tenant_id: Tenant that owns the build
            build_id: Identifier of the build

        Returns:
            Dictionary confirming the deletion
        """
        await asyncio.to_thread(services.store.delete, tenant_id, build_id)
        return {"status": "deleted", "tenant_id": tenant_id, "build_id": build_id}

    @mcp.prompt("show builds")
    def show_builds_prompt():
        """User wants to see previous builds"""
        return ["list_build_artifacts"]

    @mcp.prompt("build history")
    def build_history_prompt():
        """User wants to see previous builds"""
        return ["list_build_artifacts", "get_build_artifact"]

    @mcp.prompt("delete build")
    def delete_build_prompt():
        """User wants to remove a build record"""
        return ["delete_build_artifact"]
