"""
Analyze module for the Obtura Build MCP Server.
This module provides tools to detect the applications of a checkout.
"""
from typing import Any, Dict

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from obtura.build_mcp_server.api.analyze import analyze_checkout
from obtura.build_mcp_server.utils.security import validate_file_path


def register_module(mcp: FastMCP) -> None:
    """Register analyze module tools and prompts with the MCP server."""

    @mcp.tool(name="analyze_checkout")
    async def mcp_analyze_checkout(
        checkout_path: str = Field(
            ...,
            description="Absolute path to the checkout to analyze",
        ),
    ) -> Dict[str, Any]:
        """
        Detects every application in a checkout and what it needs to build and run.

        This tool probes the checkout root and conventional service directories
        (client, server, api, apps, packages, ...) for package manifests and
        identifies the technology of each application.

        USAGE INSTRUCTIONS:
        1. Provide the absolute path to the checkout
        2. Review the detected applications before containerizing or building

        The analysis includes:
        - Technology, runtime image, port and build/start commands per application
        - Whether the checkout is a monorepo
        - Datastores and supporting services inferred from dependencies
        - The Dockerfile template each application will use

        Parameters:
            checkout_path: Absolute path to the checkout

        Returns:
            Dictionary containing the detected project structure
        """
        return await analyze_checkout(validate_file_path(checkout_path))

    @mcp.prompt("analyze project")
    def analyze_project_prompt():
        """User wants to know what a project is built with"""
        return ["analyze_checkout"]

    @mcp.prompt("what framework")
    def what_framework_prompt():
        """User wants to know which framework a project uses"""
        return ["analyze_checkout"]

    @mcp.prompt("detect services")
    def detect_services_prompt():
        """User wants to find the services of a monorepo"""
        return ["analyze_checkout"]
