"""
API for generating the multi-service orchestration file of a monorepo.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from obtura.build_mcp_server.models.project import DetectedApplication, ProjectStructure
from obtura.build_mcp_server.utils.errors import GenerationError, ServiceNameCollision
from obtura.build_mcp_server.utils.technologies import is_backend, is_frontend, needs_database
from obtura.build_mcp_server.utils.templates import render_template

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "app"
DEFAULT_NAMESPACE = "obtura"
GENERATED_MARKER = "# Generated by Obtura"

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9-]+")
_REPEATED_HYPHENS = re.compile(r"-+")


def normalize_service_name(path: str) -> str:
    """
    Turns an application path into a container and service name.

    Runs of characters other than ASCII letters, digits and hyphens become a
    single hyphen (underscores included), so the result always matches
    ^[a-z0-9-]+$. Empty results fall back to the default name.

    Args:
        path: Application path relative to the checkout

    Returns:
        Normalized service name
    """
    if path in ("", "."):
        return DEFAULT_SERVICE_NAME

    name = path.strip("/\\.")
    name = _INVALID_NAME_CHARS.sub("-", name)
    name = _REPEATED_HYPHENS.sub("-", name).strip("-").lower()

    if not name:
        name = DEFAULT_SERVICE_NAME
    logger.debug(f"Normalizing {path} to {name}")
    return name


def image_repository(project_id: str, service_name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/{normalize_service_name(project_id)}-{service_name}"


def image_reference(
    project_id: str, service_name: str, build_id: str, namespace: str = DEFAULT_NAMESPACE
) -> str:
    """Image reference a service of a build is tagged and pushed as."""
    return f"{image_repository(project_id, service_name, namespace)}:{build_id}"


def service_names(structure: ProjectStructure) -> Dict[str, DetectedApplication]:
    """
    Maps normalized service names to applications.

    Raises:
        ServiceNameCollision: If two application paths normalize to the same name
    """
    names: Dict[str, DetectedApplication] = {}
    for application in structure.applications:
        name = normalize_service_name(application.path)
        if name in names:
            raise ServiceNameCollision(
                f"Applications at '{names[name].path}' and '{application.path}' "
                f"both map to service name '{name}'",
                app_path=application.path,
            )
        names[name] = application
    return names


def has_database(structure: ProjectStructure) -> bool:
    """Checks whether any application conventionally needs a datastore."""
    if structure.architecture.has_database:
        return True
    return any(needs_database(application) for application in structure.applications)


def health_check(application: DetectedApplication) -> Optional[Dict[str, Any]]:
    """Builds the compose health check of a backend application, if it has one."""
    if not is_backend(application) or not application.health_check:
        return None

    url = f"http://localhost:{application.port}{application.health_check}"
    start_period = None
    if application.runtime.startswith("python"):
        test = ["CMD", "python", "-c", f"import urllib.request; urllib.request.urlopen('{url}')"]
        start_period = "40s"
    elif "alpine" in application.runtime:
        test = ["CMD", "wget", "--no-verbose", "--tries=1", "--spider", url]
    else:
        test = ["CMD", "curl", "-f", url]
    return {"test": json.dumps(test), "start_period": start_period}


def _host_ports(applications: List[DetectedApplication]) -> List[int]:
    # Static services all listen on 80 inside their containers
    used = set()
    ports = []
    for application in applications:
        port = application.port
        while port in used:
            port = 8000 + port if port < 1000 else port + 1
        used.add(port)
        ports.append(port)
    return ports


def generate_orchestration(
    structure: ProjectStructure,
    project_id: str,
    build_id: str,
    include_datastores: bool = False,
    namespace: str = DEFAULT_NAMESPACE,
    dockerfile: str = "Dockerfile",
) -> str:
    """
    Generates docker-compose.yml content for a monorepo.

    Args:
        structure: Detected project structure with more than one application
        project_id: Project the images belong to
        build_id: Build the images are tagged with
        include_datastores: Also declare postgres and redis services when a
            datastore is needed, as the deployment variant does
        namespace: Image namespace
        dockerfile: Build file name inside each application root

    Returns:
        Compose file text

    Raises:
        GenerationError: If the structure holds a single application
        ServiceNameCollision: If two applications map to the same service name
    """
    if not structure.is_monorepo:
        raise GenerationError(
            "docker-compose generation requires a monorepo with multiple services"
        )

    named = service_names(structure)
    backends = [name for name, application in named.items() if is_backend(application)]
    host_ports = _host_ports(list(named.values()))
    needs_datastore = has_database(structure)

    services = []
    for (name, application), host_port in zip(named.items(), host_ports):
        depends_on: List[str] = []
        if is_frontend(application):
            depends_on = [backend for backend in backends if backend != name]
        services.append(
            {
                "name": name,
                "path": application.path,
                "image": image_reference(project_id, name, build_id, namespace),
                "container_name": f"{normalize_service_name(project_id)}-{name}",
                "port": application.port,
                "host_port": host_port,
                "environment": sorted(application.env_vars.items()),
                "healthcheck": health_check(application),
                "depends_on": depends_on,
            }
        )

    logger.info(
        f"Generating docker-compose.yml for {len(services)} services of project {project_id}"
    )
    return render_template(
        "docker-compose.yml.j2",
        marker=GENERATED_MARKER,
        project_id=normalize_service_name(project_id),
        build_id=build_id,
        services=services,
        dockerfile=dockerfile,
        include_datastores=include_datastores and needs_datastore,
        volumes=needs_datastore,
    )
