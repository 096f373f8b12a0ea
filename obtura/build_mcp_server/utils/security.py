"""
Security utilities for the Obtura Build MCP Server.
"""

import functools
import logging
import os.path
import re
from typing import Any, Awaitable, Callable, Dict, Literal

logger = logging.getLogger(__name__)

# Define permission types as constants
PERMISSION_WRITE = "write"
PERMISSION_NONE = "none"

PermissionType = Literal["write", "none"]

IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z0-9\-_]+$")


class SecurityError(Exception):
    """Exception raised for security-related errors."""
    pass


class ValidationError(Exception):
    """Exception raised for validation errors."""
    pass


def validate_identifier(value: str, kind: str = "Identifier") -> str:
    """
    Validates a tenant, build or project identifier before it is used in keys and tags.

    Args:
        value: The identifier to validate
        kind: Label used in the error message

    Returns:
        str: The identifier

    Raises:
        ValidationError: If the identifier contains invalid characters
    """
    if not value or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"{kind} '{value}' contains invalid characters. "
            "Only alphanumeric characters, hyphens, and underscores are allowed."
        )
    return value


def validate_file_path(path: str) -> str:
    """
    Validates file path to prevent directory traversal attacks.

    Args:
        path: The file path to validate

    Returns:
        str: The normalized absolute path

    Raises:
        ValidationError: If the path is invalid or doesn't exist
    """
    abs_path = os.path.abspath(os.path.normpath(path))

    if not os.path.exists(abs_path):
        raise ValidationError(f"Path '{path}' does not exist")

    suspicious_patterns = [
        r'/\.\./',  # /../
        r'\\\.\.\\',  # \..\ (Windows)
        r'^\.\./',  # ../
        r'^\.\.\\',  # ..\ (Windows)
    ]

    for pattern in suspicious_patterns:
        if re.search(pattern, path):
            raise ValidationError(f"Path '{path}' contains suspicious traversal patterns")

    return abs_path


def ensure_within_root(root: str, relative_path: str) -> str:
    """
    Resolves a path against the checkout root and refuses anything outside it.

    Args:
        root: Checkout root
        relative_path: Path relative to the root

    Returns:
        str: The resolved absolute path

    Raises:
        SecurityError: If the path resolves outside the root
    """
    real_root = os.path.realpath(root)
    target = os.path.realpath(os.path.join(real_root, relative_path))
    if os.path.commonpath([real_root, target]) != real_root:
        raise SecurityError(f"Refusing to write '{relative_path}' outside of {root}")
    return target


def check_permission(config: Dict[str, Any], permission_type: PermissionType) -> bool:
    """
    Checks if the specified permission is allowed based on configuration settings.

    Args:
        config: The MCP server configuration
        permission_type: The type of permission to check

    Returns:
        bool: Whether the operation is allowed

    Raises:
        SecurityError: If the operation is not allowed
    """
    if permission_type == PERMISSION_WRITE and not config.get("allow-write", False):
        raise SecurityError(
            "Write operations are disabled for security. "
            "Set ALLOW_WRITE=true in your environment to enable building, "
            "pushing and deleting build artifacts."
        )

    return True


def secure_tool(config: Dict[str, Any], permission_type: PermissionType, tool_name: str = None):
    """
    Decorator to secure a tool function with permission checks.

    Args:
        config: The MCP server configuration
        permission_type: The type of permission required for this tool
        tool_name: Optional name of the tool (for logging purposes)

    Returns:
        Decorator function that wraps the tool with security checks
    """
    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                check_permission(config, permission_type)
            except SecurityError as e:
                log_tool_name = tool_name or func.__name__
                logger.warning(f"Security validation failed for tool {log_tool_name}: {str(e)}")
                return {
                    "error": str(e),
                    "status": "failed",
                    "message": "Security validation failed. Please check your environment configuration.",
                }
            return await func(*args, **kwargs)
        return wrapper
    return decorator
