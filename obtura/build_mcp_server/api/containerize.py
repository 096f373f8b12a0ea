"""
API for generating the build files of a checkout.
"""

import asyncio
import json
import logging
import os
import re
import shlex
from typing import Any, Dict, List, Set

from jinja2 import TemplateError

from obtura.build_mcp_server.api.compose import (
    DEFAULT_NAMESPACE,
    GENERATED_MARKER,
    generate_orchestration,
    image_reference,
    normalize_service_name,
)
from obtura.build_mcp_server.models.artifact import ApplicationFailure, GenerationReport
from obtura.build_mcp_server.models.project import DetectedApplication, ProjectStructure
from obtura.build_mcp_server.utils.errors import BuildServiceError, GenerationError
from obtura.build_mcp_server.utils.framework_detection import detect_project_structure
from obtura.build_mcp_server.utils.next_config import ensure_standalone_output
from obtura.build_mcp_server.utils.security import SecurityError, ensure_within_root
from obtura.build_mcp_server.utils.templates import render_template, template_exists

logger = logging.getLogger(__name__)

GENERIC_TEMPLATE = "dockerfile_generic.j2"

_NODE_STATIC = "dockerfile_node_static.j2"
_NODE_BUILD = "dockerfile_node_build.j2"
_NODE = "dockerfile_node.j2"

EXACT_TEMPLATES = {
    "Next.js": "dockerfile_nextjs.j2",
    "Astro (SSR)": _NODE_BUILD,
    "Remix": _NODE_BUILD,
    "SvelteKit": _NODE_BUILD,
    "SolidStart": _NODE_BUILD,
    "NestJS": _NODE_BUILD,
    "Hono": _NODE_BUILD,
    "Nuxt.js": _NODE_BUILD,
    "Strapi": _NODE_BUILD,
    "Astro": _NODE_STATIC,
    "SvelteKit (Static)": _NODE_STATIC,
    "Solid (Vite)": _NODE_STATIC,
    "Angular": _NODE_STATIC,
    "Gatsby": _NODE_STATIC,
    "Vite + React": _NODE_STATIC,
    "Vite + Vue": _NODE_STATIC,
    "Vite + Svelte": _NODE_STATIC,
    "Vite": _NODE_STATIC,
    "Create React App": _NODE_STATIC,
    "Eleventy": _NODE_STATIC,
    "Hexo": _NODE_STATIC,
    "VuePress": _NODE_STATIC,
    "Express.js": _NODE,
    "Fastify": _NODE,
    "Koa": _NODE,
    "Node.js": _NODE,
    "Django": "dockerfile_python.j2",
    "Flask": "dockerfile_python.j2",
    "FastAPI": "dockerfile_python.j2",
    "Python": "dockerfile_python.j2",
    "Laravel": "dockerfile_php.j2",
    "Symfony": "dockerfile_php.j2",
    "PHP": "dockerfile_php.j2",
    "Ruby on Rails": "dockerfile_ruby.j2",
    "Sinatra": "dockerfile_ruby.j2",
    "Spring Boot": "dockerfile_maven.j2",
    "Maven": "dockerfile_maven.j2",
    "Gradle": "dockerfile_gradle.j2",
    "Blazor WebAssembly": "dockerfile_dotnet_static.j2",
    "Blazor Server": "dockerfile_dotnet.j2",
    "ASP.NET Core": "dockerfile_dotnet.j2",
    "Phoenix": "dockerfile_elixir.j2",
    "Static HTML/CSS": "dockerfile_static.j2",
}

# Checked in order after the exact table
PREFIX_TEMPLATES = (
    ("Go", "dockerfile_go.j2"),
    ("Rust", "dockerfile_rust.j2"),
    ("Ruby", "dockerfile_ruby.j2"),
    ("Elixir", "dockerfile_elixir.j2"),
    ("Deno", "dockerfile_deno.j2"),
    ("Bun", "dockerfile_bun.j2"),
    (".NET", "dockerfile_dotnet.j2"),
)

_SHELL_OPERATORS = re.compile(r"&&|\|\||[|;<>$`*]")
_STATIC_COMMAND = ["nginx", "-g", "daemon off;"]


def select_dockerfile_template(name: str) -> str:
    """
    Selects the Dockerfile template for a technology.

    Args:
        name: Technology name as detected

    Returns:
        Template file name in the templates directory
    """
    template_name = EXACT_TEMPLATES.get(name)
    if template_name is None:
        for prefix, candidate in PREFIX_TEMPLATES:
            if name.startswith(prefix):
                template_name = candidate
                break

    if template_name is None or not template_exists(template_name):
        logger.debug(f"No dedicated Dockerfile template for {name}, using generic template")
        return GENERIC_TEMPLATE
    return template_name


def exec_form(application: DetectedApplication) -> str:
    """Renders the start command as a JSON exec-form CMD argument."""
    command = application.start_command
    if not command:
        if application.is_static:
            return json.dumps(_STATIC_COMMAND)
        if application.runtime.startswith(("node", "oven/bun")):
            command = "npm start"
        else:
            raise GenerationError(
                f"No start command detected for {application.name}", app_path=application.path
            )

    if _SHELL_OPERATORS.search(command):
        return json.dumps(["sh", "-c", command])
    return json.dumps(shlex.split(command))


def relative_file(app_path: str, file_name: str) -> str:
    if app_path in ("", "."):
        return file_name
    return f"{app_path.strip('/')}/{file_name}"


def _write_file(checkout_path: str, relative_path: str, content: str) -> None:
    target = ensure_within_root(checkout_path, relative_path)
    try:
        with open(target, "w", encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        raise GenerationError(f"Failed to write {relative_path}: {e}") from e


def is_user_authored(path: str) -> bool:
    """Checks whether an existing build file was written by someone other than the generator."""
    if not os.path.isfile(path):
        return False
    try:
        with open(path, "r", encoding="utf-8") as f:
            first_line = f.readline()
    except (OSError, UnicodeDecodeError):
        return True
    return not first_line.startswith(GENERATED_MARKER)


def render_dockerfile(application: DetectedApplication) -> str:
    """Renders the Dockerfile of an application."""
    template_name = select_dockerfile_template(application.name)
    logger.info(f"Rendering {template_name} for {application.name} at {application.path}")
    return render_template(
        template_name,
        marker=GENERATED_MARKER,
        app=application,
        env_vars=sorted(application.env_vars.items()),
        start_command=exec_form(application),
    )


def generate_application_files(
    application: DetectedApplication,
    structure: ProjectStructure,
    checkout_path: str,
    dockerfile: str = "Dockerfile",
) -> Set[str]:
    """
    Writes the build files of one application into the checkout.

    A Dockerfile without the generated header line is left alone, as is an
    existing nginx.conf.

    Args:
        application: The application to containerize
        structure: The detected structure the application belongs to
        checkout_path: Checkout root
        dockerfile: Build file name inside the application root

    Returns:
        Checkout-relative paths that were written

    Raises:
        GenerationError: If a file cannot be rendered or written
        SecurityError: If the application path points outside the checkout
    """
    app_dir = ensure_within_root(checkout_path, application.path)
    written: Set[str] = set()

    try:
        dockerfile_path = relative_file(application.path, dockerfile)
        if is_user_authored(os.path.join(app_dir, dockerfile)):
            logger.info(f"Keeping user-authored {dockerfile_path}")
        else:
            _write_file(checkout_path, dockerfile_path, render_dockerfile(application))
            written.add(dockerfile_path)

        if application.name == "Next.js":
            for name in ensure_standalone_output(app_dir):
                written.add(relative_file(application.path, name))

        if application.is_static:
            nginx_path = relative_file(application.path, "nginx.conf")
            if os.path.exists(os.path.join(app_dir, "nginx.conf")):
                logger.info(f"Keeping existing {nginx_path}")
            else:
                content = render_template(
                    "nginx.conf.j2", marker=GENERATED_MARKER, app=application
                )
                _write_file(checkout_path, nginx_path, content)
                written.add(nginx_path)
    except GenerationError as e:
        raise e.with_context(app_path=application.path)
    except TemplateError as e:
        raise GenerationError(
            f"Failed to render build files: {e}", app_path=application.path
        ) from e

    logger.info(
        f"Generated {len(written)} files for {application.name} at {application.path} "
        f"({len(structure.applications)} applications in checkout)"
    )
    return written


def _service_summaries(
    structure: ProjectStructure, project_id: str, build_id: str, namespace: str
) -> List[Dict[str, Any]]:
    summaries = []
    for application in structure.applications:
        name = normalize_service_name(application.path)
        summaries.append(
            {
                "name": name,
                "technology": application.name,
                "port": application.port,
                "path": application.path,
                "build_command": application.build_command,
                "start_command": application.start_command,
                "is_static": application.is_static,
                "output_directory": application.output_directory,
                "image": image_reference(project_id, name, build_id, namespace),
                "variables": sorted(application.env_vars.items()),
            }
        )
    return summaries


def generate_build_files(
    structure: ProjectStructure,
    checkout_path: str,
    project_id: str,
    build_id: str,
    namespace: str = DEFAULT_NAMESPACE,
    dockerfile: str = "Dockerfile",
) -> GenerationReport:
    """
    Writes the build files of every application and of the checkout.

    A failing application is reported and does not stop its siblings. The
    checkout-level files are docker-compose.yml (monorepos only),
    .env.example and BUILD_README.md.

    Raises:
        GenerationError: If a checkout-level file cannot be written
    """
    report = GenerationReport()
    written: Set[str] = set()

    for application in structure.applications:
        try:
            written |= generate_application_files(
                application, structure, checkout_path, dockerfile=dockerfile
            )
        except (BuildServiceError, SecurityError) as e:
            logger.error(f"Failed to generate build files for {application.path}: {e}")
            report.failures.append(
                ApplicationFailure(path=application.path, stage="generate", error=str(e))
            )

    services = _service_summaries(structure, project_id, build_id, namespace)
    try:
        if structure.is_monorepo:
            compose = generate_orchestration(
                structure, project_id, build_id, namespace=namespace, dockerfile=dockerfile
            )
            _write_file(checkout_path, "docker-compose.yml", compose)
            written.add("docker-compose.yml")

        _write_file(checkout_path, ".env.example", render_template("env.example.j2", services=services))
        written.add(".env.example")

        readme = render_template(
            "BUILD_README.md.j2",
            is_monorepo=structure.is_monorepo,
            services=services,
            databases=structure.architecture.databases,
        )
        _write_file(checkout_path, "BUILD_README.md", readme)
        written.add("BUILD_README.md")
    except TemplateError as e:
        raise GenerationError(f"Failed to render checkout build files: {e}") from e

    report.files = sorted(written)
    return report


async def containerize_checkout(
    checkout_path: str,
    project_id: str,
    build_id: str,
    namespace: str = DEFAULT_NAMESPACE,
    dockerfile: str = "Dockerfile",
) -> Dict[str, Any]:
    """
    Detects the applications of a checkout and writes their build files.

    Args:
        checkout_path: Path to the checkout
        project_id: Project the images will belong to
        build_id: Build the images will be tagged with
        namespace: Image namespace
        dockerfile: Build file name inside each application root

    Returns:
        Dict with the detected applications, written files and failures
    """
    logger.info(f"Containerizing checkout at {checkout_path}")

    def _run():
        structure = detect_project_structure(checkout_path)
        return structure, generate_build_files(
            structure, checkout_path, project_id, build_id, namespace=namespace, dockerfile=dockerfile
        )

    structure, report = await asyncio.to_thread(_run)

    return {
        "checkout_path": checkout_path,
        "is_monorepo": structure.is_monorepo,
        "applications": [
            {
                "name": application.name,
                "path": application.path,
                "service": normalize_service_name(application.path),
                "port": application.port,
                "template": select_dockerfile_template(application.name),
            }
            for application in structure.applications
        ],
        "files": report.files,
        "failures": [failure.model_dump() for failure in report.failures],
    }
