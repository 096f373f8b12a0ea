"""
Unit tests for Next.js standalone output patching.
"""

import json
import os
import tempfile
import unittest

from obtura.build_mcp_server.utils.errors import ConfigPatchError
from obtura.build_mcp_server.utils.next_config import (
    ensure_standalone_output,
    has_standalone_output,
    mask_source,
)


class TestMaskSource(unittest.TestCase):
    """Tests for mask_source."""

    def test_keeps_length_and_newlines(self):
        source = "const a = 'x: y'; // output: 'export'\n/* b */ const c = 1;\n"

        masked = mask_source(source)

        self.assertEqual(len(masked), len(source))
        self.assertEqual(masked.count("\n"), source.count("\n"))
        self.assertNotIn("output", masked)
        self.assertIn("const c = 1;", masked)

    def test_commented_output_is_ignored(self):
        source = "module.exports = {\n  // output: 'standalone',\n  reactStrictMode: true,\n};\n"

        self.assertFalse(has_standalone_output(source))


class TestEnsureStandaloneOutput(unittest.TestCase):
    """Tests for ensure_standalone_output."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.app_dir = self.temp_dir.name

    def tearDown(self):
        """Tear down test fixtures."""
        self.temp_dir.cleanup()

    def create_file(self, name, content):
        with open(os.path.join(self.app_dir, name), "w") as f:
            f.write(content)

    def read_file(self, name):
        with open(os.path.join(self.app_dir, name)) as f:
            return f.read()

    def test_already_standalone_is_untouched(self):
        source = "module.exports = { output: \"standalone\" };\n"
        self.create_file("next.config.js", source)

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, [])
        self.assertEqual(self.read_file("next.config.js"), source)

    def test_rewrites_other_output_value(self):
        self.create_file("next.config.js", "module.exports = {\n  output: 'export',\n};\n")

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.js"])
        self.assertEqual(
            self.read_file("next.config.js"), "module.exports = {\n  output: 'standalone',\n};\n"
        )

    def test_injects_into_exported_literal(self):
        self.create_file("next.config.mjs", "export default {\n  reactStrictMode: true,\n};\n")

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.mjs"])
        content = self.read_file("next.config.mjs")
        self.assertTrue(has_standalone_output(content))
        self.assertIn("reactStrictMode: true", content)

    def test_injects_into_named_literal(self):
        source = (
            "/** @type {import('next').NextConfig} */\n"
            "const nextConfig = {};\n\n"
            "module.exports = nextConfig;\n"
        )
        self.create_file("next.config.js", source)

        ensure_standalone_output(self.app_dir)

        content = self.read_file("next.config.js")
        self.assertIn("const nextConfig = {\n  output: 'standalone',\n};", content)

    def test_shorthand_output_is_wrapped(self):
        source = "const output = 'export';\nmodule.exports = { output };\n"
        self.create_file("next.config.js", source)

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.base.js", "next.config.js"])
        self.assertEqual(self.read_file("next.config.base.js"), source)
        self.assertNotIn("output: 'standalone', output", self.read_file("next.config.js"))
        self.assertEqual(ensure_standalone_output(self.app_dir), [])

    def test_later_spread_is_wrapped(self):
        source = "const shared = require('./shared');\nmodule.exports = { output: 'standalone', ...shared };\n"
        self.create_file("next.config.js", source)

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.base.js", "next.config.js"])
        self.assertEqual(self.read_file("next.config.base.js"), source)

    def test_duplicate_output_keys_are_wrapped(self):
        self.create_file("next.config.js", "module.exports = { output: 'standalone', output: 'export' };\n")

        self.assertEqual(ensure_standalone_output(self.app_dir), ["next.config.base.js", "next.config.js"])

    def test_quoted_and_computed_keys_are_wrapped(self):
        for index, literal in enumerate(("{ 'output': 'export' }", "{ [key]: 'export' }")):
            app_dir = os.path.join(self.app_dir, str(index))
            os.makedirs(app_dir)
            with open(os.path.join(app_dir, "next.config.js"), "w") as f:
                f.write(f"module.exports = {literal};\n")

            self.assertEqual(
                ensure_standalone_output(app_dir), ["next.config.base.js", "next.config.js"], literal
            )

    def test_earlier_spread_keeps_rewrite(self):
        self.create_file("next.config.js", "module.exports = { ...shared, output: 'export', images: { ...x } };\n")

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.js"])
        self.assertEqual(
            self.read_file("next.config.js"),
            "module.exports = { ...shared, output: 'standalone', images: { ...x } };\n",
        )

    def test_wraps_unrecognized_config(self):
        source = "const withPlugins = require('plugins');\nmodule.exports = withPlugins({});\n"
        self.create_file("next.config.js", source)

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.base.js", "next.config.js"])
        self.assertEqual(self.read_file("next.config.base.js"), source)
        wrapper = self.read_file("next.config.js")
        self.assertIn("require('./next.config.base.js')", wrapper)
        self.assertTrue(has_standalone_output(wrapper))

    def test_wraps_typescript_config_as_esm(self):
        self.create_file("next.config.ts", "export default defineConfig({});\n")

        ensure_standalone_output(self.app_dir)

        wrapper = self.read_file("next.config.ts")
        self.assertIn("import baseConfig from './next.config.base';", wrapper)
        self.assertIn("phase: string", wrapper)

    def test_wrap_refuses_to_overwrite_base(self):
        self.create_file("next.config.js", "module.exports = build();\n")
        self.create_file("next.config.base.js", "module.exports = {};\n")

        with self.assertRaises(ConfigPatchError):
            ensure_standalone_output(self.app_dir)

    def test_creates_config_when_missing(self):
        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.js"])
        content = self.read_file("next.config.js")
        self.assertIn("module.exports = nextConfig;", content)
        self.assertTrue(has_standalone_output(content))

    def test_creates_esm_config_for_module_packages(self):
        self.create_file("package.json", json.dumps({"type": "module"}))

        written = ensure_standalone_output(self.app_dir)

        self.assertEqual(written, ["next.config.mjs"])
        self.assertIn("export default nextConfig;", self.read_file("next.config.mjs"))

    def test_second_run_changes_nothing(self):
        """Every strategy leaves a config the next run recognizes."""
        sources = {
            "a": ("next.config.js", "module.exports = {\n  output: 'export',\n};\n"),
            "b": ("next.config.mjs", "export default {\n  images: {},\n};\n"),
            "c": ("next.config.js", "module.exports = compose(a, b)({});\n"),
            "d": None,
        }
        for name, config in sources.items():
            app_dir = os.path.join(self.app_dir, name)
            os.makedirs(app_dir)
            if config is not None:
                with open(os.path.join(app_dir, config[0]), "w") as f:
                    f.write(config[1])

            ensure_standalone_output(app_dir)
            snapshot = {entry: open(os.path.join(app_dir, entry)).read() for entry in os.listdir(app_dir)}

            self.assertEqual(ensure_standalone_output(app_dir), [], name)
            after = {entry: open(os.path.join(app_dir, entry)).read() for entry in os.listdir(app_dir)}
            self.assertEqual(after, snapshot, name)


if __name__ == "__main__":
    unittest.main()
