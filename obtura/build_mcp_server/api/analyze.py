"""
API for analyzing a checkout before it is built.
"""

import asyncio
import logging
from typing import Any, Dict

from obtura.build_mcp_server.api.compose import has_database, normalize_service_name
from obtura.build_mcp_server.api.containerize import select_dockerfile_template
from obtura.build_mcp_server.utils.framework_detection import detect_project_structure
from obtura.build_mcp_server.utils.technologies import is_backend, is_frontend, needs_database

logger = logging.getLogger(__name__)


async def analyze_checkout(checkout_path: str) -> Dict[str, Any]:
    """
    Detects the applications of a checkout and what they need to run.

    Args:
        checkout_path: Path to the checkout

    Returns:
        Dict containing the detected structure and per-application build details

    Raises:
        DetectionFailure: If no application is found
    """
    logger.info(f"Analyzing checkout at {checkout_path}")

    structure = await asyncio.to_thread(detect_project_structure, checkout_path)

    applications = []
    for application in structure.applications:
        role = "backend" if is_backend(application) else "frontend" if is_frontend(application) else "other"
        applications.append(
            {
                **application.model_dump(),
                "service": normalize_service_name(application.path),
                "role": role,
                "needs_database": needs_database(application),
                "dockerfile_template": select_dockerfile_template(application.name),
            }
        )

    analysis = {
        "checkout_path": checkout_path,
        "is_monorepo": structure.is_monorepo,
        "applications": applications,
        "architecture": structure.architecture.model_dump(),
        "needs_datastore": has_database(structure),
    }
    logger.info(
        f"Analysis complete: {len(applications)} applications, monorepo={structure.is_monorepo}"
    )
    return analysis
