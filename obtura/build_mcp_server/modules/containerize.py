"""
Containerize module for the Obtura Build MCP Server.
This module provides tools and prompts for generating build files.
"""
from typing import Any, Dict

from mcp.server.fastmcp import FastMCP
from pydantic import Field

from obtura.build_mcp_server.api.containerize import containerize_checkout
from obtura.build_mcp_server.utils.security import (
    PERMISSION_WRITE,
    secure_tool,
    validate_file_path,
    validate_identifier,
)


def register_module(mcp: FastMCP, config: Dict[str, Any]) -> None:
    """Register containerize module tools and prompts with the MCP server."""

    @mcp.tool(name="containerize_checkout")
    @secure_tool(config, PERMISSION_WRITE, "containerize_checkout")
    async def mcp_containerize_checkout(
        checkout_path: str = Field(
            ...,
            description="Absolute path to the checkout",
        ),
        project_id: str = Field(
            ...,
            description="Project the images belong to (letters, digits, hyphens, underscores)",
        ),
        build_id: str = Field(
            default="latest",
            description="Build identifier used as the image tag",
        ),
    ) -> Dict[str, Any]:
        """
        Writes Dockerfiles and supporting build files into a checkout.

        This tool detects the applications of the checkout and writes a
        multi-stage Dockerfile into each application root. Dockerfiles that were
        not generated by this tool are left untouched.

        USAGE INSTRUCTIONS:
        1. Provide the absolute path to the checkout and a project identifier
        2. Review the generated files before building

        The generated files include:
        - Dockerfile per application
        - nginx.conf for static sites
        - next.config with standalone output for Next.js applications
        - docker-compose.yml for monorepos
        - .env.example and BUILD_README.md at the checkout root

        Parameters:
            checkout_path: Absolute path to the checkout
            project_id: Project the images belong to
            build_id: Build identifier used as the image tag

        Returns:
            Dictionary containing the written files and any per-application failures
        """
        return await containerize_checkout(
            validate_file_path(checkout_path),
            validate_identifier(project_id, "Project ID"),
            validate_identifier(build_id, "Build ID"),
            namespace=config.get("image_namespace", "obtura"),
            dockerfile=config.get("dockerfile_name", "Dockerfile"),
        )

    @mcp.prompt("dockerize")
    def dockerize_prompt():
        """User wants to containerize an application"""
        return ["containerize_checkout"]

    @mcp.prompt("containerize")
    def containerize_prompt():
        """User wants to containerize an application"""
        return ["containerize_checkout"]

    @mcp.prompt("generate dockerfile")
    def generate_dockerfile_prompt():
        """User wants a Dockerfile for an application"""
        return ["analyze_checkout", "containerize_checkout"]

    @mcp.prompt("docker compose")
    def docker_compose_prompt():
        """User wants a docker-compose.yml for a monorepo"""
        return ["containerize_checkout"]
