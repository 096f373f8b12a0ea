#!/usr/bin/env python3
"""
Obtura Build MCP Server - Main entry point
"""

import logging
import os
import sys

from mcp.server.fastmcp import FastMCP

from obtura.build_mcp_server.api.services import BuildServices, create_services
from obtura.build_mcp_server.modules import analyze, artifacts, build, containerize, quota
from obtura.build_mcp_server.utils.config import get_config

# Configure logging
logging.basicConfig(
    level=os.environ.get("FASTMCP_LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("obtura-build-mcp-server")

config = get_config()

# Create the MCP server
mcp = FastMCP(
    name="Obtura Build MCP Server",
    instructions="""Use this server to turn source checkouts into container images.

WORKFLOW:
1. analyze_checkout:
   - Detect every application in the checkout and its technology
   - See ports, build and start commands, and inferred datastores

2. containerize_checkout:
   - Write a multi-stage Dockerfile into each application root
   - Write docker-compose.yml for monorepos, .env.example and BUILD_README.md

3. build_checkout:
   - Check the tenant's build quota
   - Build and push one image per application
   - Store a build manifest

4. get_build_quota, list_build_artifacts, get_build_artifact:
   - Inspect limits, usage and previous builds

IMPORTANT:
- Tenant, project and build identifiers may only contain letters, digits, hyphens and underscores
- Writing files, building and deleting require ALLOW_WRITE=true
- Dockerfiles that were not generated by this server are never overwritten
""",
)

analyze.register_module(mcp)
containerize.register_module(mcp, config)


def register_build_modules(services: BuildServices) -> None:
    """Registers the tools that need the quota database, the engine and the artifact store."""
    build.register_module(mcp, services, config)
    artifacts.register_module(mcp, services, config)
    quota.register_module(mcp, services)


def main() -> None:
    """Main entry point for the Obtura Build MCP Server."""
    try:
        services = create_services(config)
        register_build_modules(services)

        # Start the server
        logger.info("Server started")
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Error starting server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
