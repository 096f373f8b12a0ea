"""
Unit tests for the security module.
"""

import asyncio
import os
import tempfile
import unittest

from obtura.build_mcp_server.utils.security import (
    PERMISSION_NONE,
    PERMISSION_WRITE,
    SecurityError,
    ValidationError,
    check_permission,
    ensure_within_root,
    secure_tool,
    validate_file_path,
    validate_identifier,
)


class TestSecurity(unittest.TestCase):
    """Test cases for the security module."""

    def test_check_permission_allowed(self):
        """Test that write operations are allowed when the flag is enabled."""
        config = {"allow-write": True}

        self.assertTrue(check_permission(config, PERMISSION_WRITE))
        self.assertTrue(check_permission(config, PERMISSION_NONE))

    def test_check_permission_denied(self):
        """Test that write operations are denied when the flag is disabled."""
        config = {"allow-write": False}

        self.assertTrue(check_permission(config, PERMISSION_NONE))
        with self.assertRaises(SecurityError):
            check_permission(config, PERMISSION_WRITE)
        with self.assertRaises(SecurityError):
            check_permission({}, PERMISSION_WRITE)

    def test_secure_tool(self):
        """Test that the decorator refuses calls without permission."""
        calls = []

        async def tool(value):
            calls.append(value)
            return {"status": "ok"}

        denied = secure_tool({"allow-write": False}, PERMISSION_WRITE, "tool")(tool)
        allowed = secure_tool({"allow-write": True}, PERMISSION_WRITE, "tool")(tool)

        result = asyncio.run(denied("a"))
        self.assertEqual(result["status"], "failed")
        self.assertEqual(calls, [])

        self.assertEqual(asyncio.run(allowed("b")), {"status": "ok"})
        self.assertEqual(calls, ["b"])

    def test_validate_identifier(self):
        """Test identifier validation."""
        self.assertEqual(validate_identifier("tenant_A-1"), "tenant_A-1")
        for value in ("", "a b", "a/b", "../x", "build:1", "ü"):
            with self.assertRaises(ValidationError, msg=value):
                validate_identifier(value, "Build ID")

    def test_validate_file_path(self):
        """Test file path validation."""
        with tempfile.TemporaryDirectory() as temp_dir:
            self.assertEqual(validate_file_path(temp_dir), os.path.abspath(temp_dir))

            with self.assertRaises(ValidationError):
                validate_file_path(os.path.join(temp_dir, "missing"))

            os.makedirs(os.path.join(temp_dir, "a", "b"))
            with self.assertRaises(ValidationError):
                validate_file_path(os.path.join(temp_dir, "a", "b", "..", "b"))

    def test_ensure_within_root(self):
        """Test that paths escaping the checkout are refused."""
        with tempfile.TemporaryDirectory() as root:
            self.assertEqual(
                ensure_within_root(root, "client/Dockerfile"),
                os.path.join(os.path.realpath(root), "client", "Dockerfile"),
            )
            self.assertEqual(ensure_within_root(root, "."), os.path.realpath(root))

            with self.assertRaises(SecurityError):
                ensure_within_root(root, "../outside")
            with self.assertRaises(SecurityError):
                ensure_within_root(root, "/etc/passwd")

    def test_ensure_within_root_follows_symlinks(self):
        """Test that a symlink pointing outside the checkout is refused."""
        with tempfile.TemporaryDirectory() as root, tempfile.TemporaryDirectory() as outside:
            os.symlink(outside, os.path.join(root, "link"))

            with self.assertRaises(SecurityError):
                ensure_within_root(root, "link/Dockerfile")


if __name__ == "__main__":
    unittest.main()
