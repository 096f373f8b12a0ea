"""
Configuration utilities for the Obtura Build MCP Server.
"""

import logging
import os
from typing import Any, Dict

logger = logging.getLogger(__name__)

SECRET_KEYS = ("registry_password", "storage_secret_key")


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def redact(config: Dict[str, Any]) -> Dict[str, Any]:
    """Masks secret values for logging."""
    return {k: ("***" if k in SECRET_KEYS and v else v) for k, v in config.items()}


def get_config() -> Dict[str, Any]:
    """
    Gets the configuration for the Obtura Build MCP Server.

    Returns:
        Dict containing configuration values
    """
    config = {
        "log_level": os.environ.get("FASTMCP_LOG_LEVEL", "INFO"),
        "allow-write": _env_flag("ALLOW_WRITE"),
        # Image building
        "docker_host": os.environ.get("DOCKER_HOST", None),
        "build_platform": os.environ.get("BUILD_PLATFORM", "linux/amd64"),
        "dockerfile_name": os.environ.get("DOCKERFILE_NAME", "Dockerfile"),
        "image_namespace": os.environ.get("IMAGE_NAMESPACE", "obtura"),
        "registry_url": os.environ.get("REGISTRY_URL", None),
        "registry_username": os.environ.get("REGISTRY_USERNAME", None),
        "registry_password": os.environ.get("REGISTRY_PASSWORD", None),
        # Artifact storage (S3 API, MinIO in development)
        "storage_endpoint": os.environ.get("STORAGE_ENDPOINT", None),
        "storage_access_key": os.environ.get("STORAGE_ACCESS_KEY", None),
        "storage_secret_key": os.environ.get("STORAGE_SECRET_KEY", None),
        "storage_bucket": os.environ.get("STORAGE_BUCKET", "obtura-builds"),
        "storage_region": os.environ.get("STORAGE_REGION", "us-east-1"),
        "storage_use_ssl": _env_flag("STORAGE_USE_SSL", "true"),
        # Quota accounting
        "database_url": os.environ.get("DATABASE_URL", "sqlite:///obtura-builds.db"),
    }

    logger.debug(f"Loaded configuration: {redact(config)}")
    return config
