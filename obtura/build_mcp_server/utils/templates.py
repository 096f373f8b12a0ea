"""
Template utilities for the Obtura Build MCP Server.
"""

import functools
import logging
import os
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

logger = logging.getLogger(__name__)


def get_templates_dir() -> str:
    """
    Gets the path to the templates directory.

    Returns:
        Path to the templates directory
    """
    current_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(current_dir, "templates")


@functools.lru_cache(maxsize=1)
def get_environment() -> Environment:
    """Gets the shared Jinja environment for build file templates."""
    # Dockerfiles and shell snippets must not be HTML-escaped
    return Environment(
        loader=FileSystemLoader(get_templates_dir()),
        autoescape=False,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        undefined=StrictUndefined,
    )


def template_exists(template_name: str) -> bool:
    return os.path.exists(os.path.join(get_templates_dir(), template_name))


def render_template(template_name: str, **params: Any) -> str:
    """Renders a template from the templates directory."""
    logger.debug(f"Rendering template {template_name}")
    return get_environment().get_template(template_name).render(**params)
