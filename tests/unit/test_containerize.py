"""
Unit tests for containerization API.
"""

import json
import os
import tempfile
import unittest

from obtura.build_mcp_server.api.compose import GENERATED_MARKER
from obtura.build_mcp_server.api.containerize import (
    GENERIC_TEMPLATE,
    containerize_checkout,
    exec_form,
    generate_application_files,
    generate_build_files,
    is_user_authored,
    relative_file,
    select_dockerfile_template,
)
from obtura.build_mcp_server.models.project import ProjectStructure
from obtura.build_mcp_server.utils.errors import GenerationError
from obtura.build_mcp_server.utils.technologies import TECHNOLOGIES


class CheckoutTestCase(unittest.TestCase):
    """Base class creating a temporary checkout."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.checkout = self.temp_dir.name

    def tearDown(self):
        """Tear down test fixtures."""
        self.temp_dir.cleanup()

    def create_file(self, path, content):
        """Create a file with the given content."""
        full_path = os.path.join(self.checkout, path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "w") as f:
            f.write(content)

    def read_file(self, path):
        with open(os.path.join(self.checkout, path)) as f:
            return f.read()

    def structure_of(self, *apps):
        applications = [TECHNOLOGIES[name].with_path(path) for name, path in apps]
        for application in applications:
            os.makedirs(os.path.join(self.checkout, application.path), exist_ok=True)
        return ProjectStructure(applications=applications)


class TestTemplateSelection(unittest.TestCase):
    """Tests for select_dockerfile_template."""

    def test_exact_names(self):
        self.assertEqual(select_dockerfile_template("Next.js"), "dockerfile_nextjs.j2")
        self.assertEqual(select_dockerfile_template("Vite + React"), "dockerfile_node_static.j2")
        self.assertEqual(select_dockerfile_template("Express.js"), "dockerfile_node.j2")
        self.assertEqual(select_dockerfile_template("Sinatra"), "dockerfile_ruby.j2")

    def test_prefix_names(self):
        self.assertEqual(select_dockerfile_template("Go (Gin)"), "dockerfile_go.j2")
        self.assertEqual(select_dockerfile_template("Rust (Rocket)"), "dockerfile_rust.j2")
        self.assertEqual(select_dockerfile_template("Bun (Elysia)"), "dockerfile_bun.j2")
        self.assertEqual(select_dockerfile_template(".NET"), "dockerfile_dotnet.j2")

    def test_unknown_technology_uses_generic(self):
        self.assertEqual(select_dockerfile_template("COBOL"), GENERIC_TEMPLATE)

    def test_every_catalog_entry_has_an_existing_template(self):
        templates_dir = os.path.join(
            os.path.dirname(__file__), "..", "..", "obtura", "build_mcp_server", "templates"
        )
        for name in TECHNOLOGIES:
            template_name = select_dockerfile_template(name)
            self.assertTrue(os.path.isfile(os.path.join(templates_dir, template_name)), name)


class TestExecForm(unittest.TestCase):
    """Tests for exec_form."""

    def test_plain_command_is_split(self):
        app = TECHNOLOGIES["Ruby on Rails"]

        self.assertEqual(
            json.loads(exec_form(app)),
            ["bundle", "exec", "rails", "server", "-b", "0.0.0.0", "-p", "3000"],
        )

    def test_shell_operators_run_through_sh(self):
        app = TECHNOLOGIES["Python"].model_copy(update={"start_command": "migrate && serve"})

        self.assertEqual(json.loads(exec_form(app)), ["sh", "-c", "migrate && serve"])

    def test_static_sites_run_nginx(self):
        self.assertEqual(json.loads(exec_form(TECHNOLOGIES["Vite"])), ["nginx", "-g", "daemon off;"])

    def test_node_without_start_command_uses_npm_start(self):
        self.assertEqual(json.loads(exec_form(TECHNOLOGIES["Remix"])), ["npm", "start"])

    def test_missing_start_command(self):
        with self.assertRaises(GenerationError):
            exec_form(TECHNOLOGIES["FastAPI"])


class TestRelativeFile(unittest.TestCase):
    """Tests for relative_file."""

    def test_root_and_nested(self):
        self.assertEqual(relative_file(".", "Dockerfile"), "Dockerfile")
        self.assertEqual(relative_file("client/", "nginx.conf"), "client/nginx.conf")


class TestGenerateApplicationFiles(CheckoutTestCase):
    """Tests for generate_application_files."""

    def test_static_application(self):
        structure = self.structure_of(("Vite + React", "."))

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, {"Dockerfile", "nginx.conf"})
        dockerfile = self.read_file("Dockerfile")
        self.assertTrue(dockerfile.startswith(GENERATED_MARKER))
        self.assertIn("COPY --from=builder /app/dist /usr/share/nginx/html", dockerfile)
        self.assertIn("try_files $uri $uri/ /index.html;", self.read_file("nginx.conf"))

    def test_existing_nginx_conf_is_kept(self):
        structure = self.structure_of(("Vite + React", "."))
        self.create_file("nginx.conf", "server { listen 80; }\n")

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, {"Dockerfile"})
        self.assertEqual(self.read_file("nginx.conf"), "server { listen 80; }\n")

    def test_user_authored_dockerfile_is_kept(self):
        structure = self.structure_of(("Express.js", "api"))
        self.create_file("api/Dockerfile", "FROM node:18\nCMD [\"node\", \"custom.js\"]\n")

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, set())
        self.assertEqual(self.read_file("api/Dockerfile"), "FROM node:18\nCMD [\"node\", \"custom.js\"]\n")

    def test_generated_dockerfile_is_regenerated(self):
        structure = self.structure_of(("Express.js", "api"))
        self.create_file("api/Dockerfile", f"{GENERATED_MARKER} for an older build\nFROM scratch\n")

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, {"api/Dockerfile"})
        dockerfile = self.read_file("api/Dockerfile")
        self.assertIn("FROM node:20-alpine AS base", dockerfile)
        self.assertIn('ENV NODE_ENV="production"', dockerfile)
        self.assertTrue(dockerfile.rstrip().endswith('CMD ["npm", "start"]'))

    def test_nextjs_gets_standalone_config(self):
        structure = self.structure_of(("Next.js", "web"))
        self.create_file("web/next.config.js", "module.exports = {\n  reactStrictMode: true,\n};\n")

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, {"web/Dockerfile", "web/next.config.js"})
        self.assertIn("output: 'standalone'", self.read_file("web/next.config.js"))
        dockerfile = self.read_file("web/Dockerfile")
        self.assertIn("/app/.next/standalone", dockerfile)
        self.assertTrue(dockerfile.rstrip().endswith('CMD ["node", "server.js"]'))

    def test_custom_dockerfile_name(self):
        structure = self.structure_of(("Go (Gin)", "."))

        written = generate_application_files(
            structure.applications[0], structure, self.checkout, dockerfile="Containerfile"
        )

        self.assertEqual(written, {"Containerfile"})

    def test_dotnet_without_project_file(self):
        self.create_file("global.json", '{"sdk": {"version": "8.0.100"}}')
        structure = self.structure_of((".NET", "."))

        written = generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(written, {"Dockerfile"})
        cmd = self.read_file("Dockerfile").rstrip().splitlines()[-1]
        self.assertEqual(
            json.loads(cmd[len("CMD "):]),
            ["sh", "-c", 'set -- *.runtimeconfig.json && exec dotnet "${1%.runtimeconfig.json}.dll"'],
        )

    def test_failure_carries_application_path(self):
        structure = self.structure_of(("FastAPI", "worker"))

        with self.assertRaises(GenerationError) as ctx:
            generate_application_files(structure.applications[0], structure, self.checkout)

        self.assertEqual(ctx.exception.app_path, "worker")


class TestIsUserAuthored(CheckoutTestCase):
    """Tests for is_user_authored."""

    def test_missing_file(self):
        self.assertFalse(is_user_authored(os.path.join(self.checkout, "Dockerfile")))

    def test_marker_on_first_line_only(self):
        self.create_file("Dockerfile", f"FROM node\n{GENERATED_MARKER}\n")

        self.assertTrue(is_user_authored(os.path.join(self.checkout, "Dockerfile")))


class TestGenerateBuildFiles(CheckoutTestCase):
    """Tests for generate_build_files."""

    def test_monorepo(self):
        structure = self.structure_of(("Vite + React", "client"), ("Express.js", "server"))

        report = generate_build_files(structure, self.checkout, "shop", "b1")

        self.assertEqual(
            report.files,
            [
                ".env.example",
                "BUILD_README.md",
                "client/Dockerfile",
                "client/nginx.conf",
                "docker-compose.yml",
                "server/Dockerfile",
            ],
        )
        self.assertEqual(report.failures, [])
        self.assertIn("# server (Express.js)\nNODE_ENV=production\nPORT=3000\n", self.read_file(".env.example"))
        readme = self.read_file("BUILD_README.md")
        self.assertIn("- **client** (Vite + React) - Port 80", readme)
        self.assertIn("`obtura/shop-server:b1`", readme)

    def test_single_application_has_no_compose(self):
        structure = self.structure_of(("Go (Gin)", "."))

        report = generate_build_files(structure, self.checkout, "shop", "b1")

        self.assertNotIn("docker-compose.yml", report.files)
        self.assertIn("docker build -t obtura/shop-app:b1 .", self.read_file("BUILD_README.md"))

    def test_failing_application_does_not_stop_siblings(self):
        structure = self.structure_of(("FastAPI", "worker"), ("Express.js", "api"))

        report = generate_build_files(structure, self.checkout, "shop", "b1")

        self.assertEqual(len(report.failures), 1)
        self.assertEqual(report.failures[0].path, "worker")
        self.assertEqual(report.failures[0].stage, "generate")
        self.assertIn("api/Dockerfile", report.files)
        self.assertNotIn("worker/Dockerfile", report.files)

    def test_path_outside_checkout_is_a_failure(self):
        structure = ProjectStructure(
            applications=[
                TECHNOLOGIES["Express.js"].with_path("../elsewhere"),
                TECHNOLOGIES["Koa"].with_path("api"),
            ]
        )
        os.makedirs(os.path.join(self.checkout, "api"))

        report = generate_build_files(structure, self.checkout, "shop", "b1")

        self.assertEqual([f.path for f in report.failures], ["../elsewhere"])
        self.assertIn("api/Dockerfile", report.files)


class TestContainerizeCheckout(unittest.IsolatedAsyncioTestCase):
    """Tests for containerize_checkout."""

    async def test_containerize_checkout(self):
        with tempfile.TemporaryDirectory() as checkout:
            os.makedirs(os.path.join(checkout, "frontend"))
            os.makedirs(os.path.join(checkout, "backend"))
            with open(os.path.join(checkout, "frontend", "package.json"), "w") as f:
                json.dump({"dependencies": {"next": "14"}, "scripts": {"start": "next start"}}, f)
            with open(os.path.join(checkout, "backend", "requirements.txt"), "w") as f:
                f.write("flask\n")

            result = await containerize_checkout(checkout, "shop", "b7")

            self.assertTrue(result["is_monorepo"])
            self.assertEqual(
                [(a["service"], a["name"]) for a in result["applications"]],
                [("backend", "Flask"), ("frontend", "Next.js")],
            )
            self.assertIn("docker-compose.yml", result["files"])
            self.assertIn("frontend/next.config.js", result["files"])
            self.assertEqual(result["failures"], [])
            self.assertTrue(os.path.isfile(os.path.join(checkout, "backend", "Dockerfile")))


if __name__ == "__main__":
    unittest.main()
