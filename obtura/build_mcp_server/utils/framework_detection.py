"""
Utilities for detecting the applications contained in a checkout.
"""

import json
import logging
import os
import re
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from obtura.build_mcp_server.models.project import (
    ArchitectureInfo,
    DatabaseDependency,
    DetectedApplication,
    ProjectStructure,
    ServiceDependency,
)
from obtura.build_mcp_server.utils.errors import DetectionFailure
from obtura.build_mcp_server.utils.technologies import TECHNOLOGIES

logger = logging.getLogger(__name__)

SKIP_DIRECTORIES = (
    "node_modules", ".git", "vendor", "dist", "build", ".venv", "venv", "__pycache__",
)

SERVICE_ROOT_NAMES = (
    "client", "frontend", "web", "ui", "app",
    "backend", "server", "api", "services",
    "packages", "apps",
)

STATIC_OUTPUT_DIRECTORIES = ("public", "www", "site", "dist", "build")

DENO_MARKERS = ("Deno.serve", "Deno.listen", "deno://", "Deno.read")


def _name_matches(name: str, candidates: Tuple[str, ...]) -> bool:
    name = name.lower()
    return any(name == candidate or candidate in name for candidate in candidates)


def is_skipped_directory(name: str) -> bool:
    """Checks whether a directory is a build output, dependency cache or VCS directory."""
    return _name_matches(name, SKIP_DIRECTORIES)


def is_service_root(name: str) -> bool:
    """Checks whether a directory name conventionally holds a service."""
    return _name_matches(name, SERVICE_ROOT_NAMES)


def _exists(dir_path: str, *names: str) -> bool:
    return any(os.path.isfile(os.path.join(dir_path, name)) for name in names)


def _read_text(path: str) -> Optional[str]:
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Error reading {path}: {e}")
        return None


def _read_json(path: str) -> Dict:
    content = _read_text(path)
    if content is None:
        return {}
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring malformed manifest {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _files(dir_path: str) -> List[str]:
    try:
        return sorted(
            entry for entry in os.listdir(dir_path) if os.path.isfile(os.path.join(dir_path, entry))
        )
    except OSError as e:
        logger.warning(f"Error listing {dir_path}: {e}")
        return []


def _subdirectories(dir_path: str) -> List[str]:
    try:
        return sorted(
            entry for entry in os.listdir(dir_path) if os.path.isdir(os.path.join(dir_path, entry))
        )
    except OSError as e:
        logger.warning(f"Error listing {dir_path}: {e}")
        return []


def _package_dependencies(package: Dict) -> FrozenSet[str]:
    names = set()
    for section in ("dependencies", "devDependencies"):
        deps = package.get(section)
        if isinstance(deps, dict):
            names.update(deps)
    return frozenset(names)


def _technology(name: str, default_start: Optional[str] = None, **overrides) -> DetectedApplication:
    """Returns a catalog entry, filling in a manifest-derived start command when it has none."""
    tech = TECHNOLOGIES[name]
    if default_start and tech.start_command is None and not tech.is_static:
        overrides.setdefault("start_command", default_start)
    return tech.model_copy(update=overrides) if overrides else tech


# Node.js


def _requires(*groups) -> Callable[[FrozenSet[str]], bool]:
    """Builds a predicate requiring every group; a tuple group matches any of its names."""
    def predicate(deps: FrozenSet[str]) -> bool:
        for group in groups:
            alternatives = group if isinstance(group, tuple) else (group,)
            if not any(name in deps for name in alternatives):
                return False
        return True
    return predicate


ASTRO = ("astro", "@astrojs/astro")

NODE_RULES = [
    (_requires("next"), "Next.js"),
    (_requires(ASTRO, "@astrojs/node"), "Astro (SSR)"),
    (_requires(ASTRO), "Astro"),
    (_requires("@remix-run/node"), "Remix"),
    (_requires("@sveltejs/kit", "@sveltejs/adapter-static"), "SvelteKit (Static)"),
    (_requires("@sveltejs/kit"), "SvelteKit"),
    (_requires("solid-js", "@solidjs/start"), "SolidStart"),
    (_requires("solid-js", "vite"), "Solid (Vite)"),
    (_requires("@angular/core"), "Angular"),
    (_requires("@nestjs/core"), "NestJS"),
    (_requires("hono"), "Hono"),
    (_requires("nuxt"), "Nuxt.js"),
    (_requires("gatsby"), "Gatsby"),
    (_requires("vite", "react"), "Vite + React"),
    (_requires("vite", "vue"), "Vite + Vue"),
    (_requires("vite", "svelte"), "Vite + Svelte"),
    (_requires("vite"), "Vite"),
    (_requires("react"), "Create React App"),
    (_requires("express"), "Express.js"),
    (_requires(("fastify", "@fastify/swagger")), "Fastify"),
    (_requires("koa"), "Koa"),
    (_requires(("strapi", "@strapi/strapi")), "Strapi"),
    (_requires("@11ty/eleventy"), "Eleventy"),
    (_requires("hexo"), "Hexo"),
    (_requires(("@vuepress/cli", "vuepress")), "VuePress"),
]

BUN_RULES = [
    (_requires("elysia"), "Bun (Elysia)"),
    (_requires(("@hono/node-server", "hono")), "Bun (Hono)"),
    (_requires("next"), "Bun (Next.js)"),
    (_requires("express"), "Bun (Express)"),
]


def _scripts(package: Dict) -> Dict:
    scripts = package.get("scripts")
    return scripts if isinstance(scripts, dict) else {}


def _node_start_command(package: Dict) -> str:
    scripts = _scripts(package)
    main = package.get("main") if isinstance(package.get("main"), str) else ""
    if "start" in scripts:
        return "npm start"
    if "dev" in scripts:
        return "npm run dev"
    if main:
        return f"node {main}"
    if "serve" in scripts:
        return "npm run serve"
    return "node index.js"


def _bun_start_command(package: Dict) -> str:
    scripts = _scripts(package)
    main = package.get("main") if isinstance(package.get("main"), str) else ""
    if "start" in scripts:
        return "bun run start"
    if "dev" in scripts:
        return "bun run dev"
    if main:
        return f"bun run {main}"
    return "bun run index.ts"


def _match_rules(rules, deps: FrozenSet[str]) -> Optional[str]:
    for predicate, name in rules:
        if predicate(deps):
            return name
    return None


def _detect_node(dir_path: str) -> DetectedApplication:
    package = _read_json(os.path.join(dir_path, "package.json"))
    name = _match_rules(NODE_RULES, _package_dependencies(package)) or "Node.js"
    return _technology(name, _node_start_command(package))


def _detect_bun(dir_path: str) -> DetectedApplication:
    package = _read_json(os.path.join(dir_path, "package.json"))
    name = _match_rules(BUN_RULES, _package_dependencies(package)) or "Bun"
    return _technology(name, _bun_start_command(package))


# Deno


def _is_deno_project(dir_path: str) -> bool:
    if _exists(dir_path, "deno.json", "deno.jsonc", "deno.config.ts"):
        return True
    for file_name in _files(dir_path):
        if file_name.endswith((".ts", ".js")):
            content = _read_text(os.path.join(dir_path, file_name)) or ""
            if any(marker in content for marker in DENO_MARKERS):
                return True
    return _exists(dir_path, "main.ts", "mod.ts")


def _detect_deno(dir_path: str) -> DetectedApplication:
    config = _read_json(os.path.join(dir_path, "deno.json"))
    tasks = config.get("tasks") if isinstance(config.get("tasks"), dict) else {}
    entry = next(
        (name for name in ("main.ts", "mod.ts", "server.ts", "index.ts") if _exists(dir_path, name)),
        "main.ts",
    )
    start = "deno task start" if "start" in tasks else f"deno run --allow-net --allow-read {entry}"
    return _technology("Deno", build_command=f"deno cache {entry}", start_command=start)


# Python


def _python_manifest_text(dir_path: str) -> str:
    parts = [
        _read_text(os.path.join(dir_path, name)) or ""
        for name in ("requirements.txt", "Pipfile", "pyproject.toml")
    ]
    return "\n".join(parts).lower()


def _python_build_command(dir_path: str) -> str:
    if _exists(dir_path, "requirements.txt"):
        return "pip install -r requirements.txt"
    if _exists(dir_path, "Pipfile"):
        return "pip install pipenv && pipenv install --system --deploy"
    return "pip install ."


def _detect_django_project_name(dir_path: str) -> str:
    """Detect the Django project name from manage.py."""
    content = _read_text(os.path.join(dir_path, "manage.py")) or ""
    settings_match = re.search(r"DJANGO_SETTINGS_MODULE['\"],\s*['\"]([^.]+)\.settings", content)
    if settings_match:
        return settings_match.group(1)
    return "project"


def _detect_app_module(dir_path: str, constructor: str, default: str) -> str:
    """Find 'module:variable' for an app object built with the given constructor."""
    pattern = re.compile(rf"(\w+)\s*=\s*{constructor}\(")
    for file_name in ("app.py", "main.py", "wsgi.py", "application.py", "server.py"):
        content = _read_text(os.path.join(dir_path, file_name))
        if content is None:
            continue
        app_var_match = pattern.search(content)
        if app_var_match:
            return f"{file_name[:-3]}:{app_var_match.group(1)}"
    return default


def _detect_python(dir_path: str) -> DetectedApplication:
    manifests = _python_manifest_text(dir_path)
    build = _python_build_command(dir_path)
    has_gunicorn = "gunicorn" in manifests

    if _exists(dir_path, "manage.py"):
        project = _detect_django_project_name(dir_path)
        if has_gunicorn:
            start = f"gunicorn --bind 0.0.0.0:8000 --workers=3 --timeout=120 {project}.wsgi:application"
        else:
            start = "python manage.py runserver 0.0.0.0:8000"
        env = dict(TECHNOLOGIES["Django"].env_vars, DJANGO_SETTINGS_MODULE=f"{project}.settings")
        return _technology("Django", build_command=build, start_command=start, env_vars=env)

    if "flask" in manifests:
        module = _detect_app_module(dir_path, "Flask", "app:app")
        if has_gunicorn:
            start = f"gunicorn --bind 0.0.0.0:5000 {module}"
        else:
            start = "flask run --host=0.0.0.0 --port=5000"
        env = dict(TECHNOLOGIES["Flask"].env_vars, FLASK_APP=module)
        return _technology("Flask", build_command=build, start_command=start, env_vars=env)

    if "fastapi" in manifests:
        module = _detect_app_module(dir_path, "FastAPI", "main:app")
        start = f"uvicorn {module} --host 0.0.0.0 --port 8000"
        return _technology("FastAPI", build_command=build, start_command=start)

    entry = next(
        (name for name in ("main.py", "app.py", "server.py") if _exists(dir_path, name)), "main.py"
    )
    return _technology("Python", build_command=build, start_command=f"python {entry}")


# Compiled and other ecosystems


def _detect_by_markers(
    dir_path: str, manifest: str, markers: List[Tuple[str, str]], fallback: str
) -> DetectedApplication:
    content = _read_text(os.path.join(dir_path, manifest)) or ""
    for marker, name in markers:
        if marker in content:
            return _technology(name)
    return _technology(fallback)


def _detect_go(dir_path: str) -> DetectedApplication:
    return _detect_by_markers(
        dir_path,
        "go.mod",
        [
            ("github.com/gin-gonic/gin", "Go (Gin)"),
            ("github.com/gofiber/fiber", "Go (Fiber)"),
            ("github.com/labstack/echo", "Go (Echo)"),
        ],
        "Go",
    )


def _detect_php(dir_path: str) -> DetectedApplication:
    composer = _read_json(os.path.join(dir_path, "composer.json"))
    require = composer.get("require") if isinstance(composer.get("require"), dict) else {}
    if "laravel/framework" in require:
        return _technology("Laravel")
    if "symfony/framework-bundle" in require:
        return _technology("Symfony")
    if os.path.isdir(os.path.join(dir_path, "public")):
        return _technology("PHP", start_command="php -S 0.0.0.0:8000 -t public")
    return _technology("PHP")


def _detect_ruby(dir_path: str) -> DetectedApplication:
    content = _read_text(os.path.join(dir_path, "Gemfile")) or ""
    gems = set(re.findall(r"^\s*gem\s+['\"]([^'\"]+)['\"]", content, re.MULTILINE))
    if "rails" in gems:
        return _technology("Ruby on Rails")
    if "sinatra" in gems:
        return _technology("Sinatra")
    return _technology("Ruby")


def _detect_jvm(dir_path: str) -> DetectedApplication:
    if _exists(dir_path, "pom.xml"):
        content = _read_text(os.path.join(dir_path, "pom.xml")) or ""
        return _technology("Spring Boot" if "spring-boot" in content else "Maven")
    return _technology("Gradle")


def _detect_rust(dir_path: str) -> DetectedApplication:
    return _detect_by_markers(
        dir_path,
        "Cargo.toml",
        [("actix-web", "Rust (Actix Web)"), ("rocket", "Rust (Rocket)")],
        "Rust",
    )


DOTNET_PROJECT_EXTENSIONS = (".csproj", ".fsproj", ".vbproj")


def _dotnet_project_file(dir_path: str) -> Optional[str]:
    return next((f for f in _files(dir_path) if f.endswith(DOTNET_PROJECT_EXTENSIONS)), None)


def _is_dotnet_project(dir_path: str) -> bool:
    return _dotnet_project_file(dir_path) is not None or _exists(dir_path, "global.json")


def _detect_dotnet(dir_path: str) -> DetectedApplication:
    project_file = _dotnet_project_file(dir_path)
    if project_file is None:
        return _technology(".NET")

    content = _read_text(os.path.join(dir_path, project_file)) or ""
    assembly = os.path.splitext(project_file)[0]
    if "Microsoft.AspNetCore" not in content and "Microsoft.NET.Sdk.Web" not in content:
        return _technology(".NET", start_command=f"dotnet {assembly}.dll")
    if "Blazor" in content and "WebAssembly" in content:
        return _technology("Blazor WebAssembly")
    name = "Blazor Server" if "Blazor" in content else "ASP.NET Core"
    return _technology(name, start_command=f"dotnet {assembly}.dll")


def _detect_elixir(dir_path: str) -> DetectedApplication:
    return _detect_by_markers(
        dir_path,
        "mix.exs",
        [(":phoenix", "Phoenix"), (":plug", "Elixir (Plug)")],
        "Elixir",
    )


def _is_static_site(dir_path: str) -> bool:
    if _exists(dir_path, "index.html", "index.htm"):
        return True
    return any(f.lower().endswith((".html", ".htm")) for f in _files(dir_path))


def _detect_static(dir_path: str) -> DetectedApplication:
    output_directory = "."
    for name in _subdirectories(dir_path):
        if name.lower() in STATIC_OUTPUT_DIRECTORIES and _exists(os.path.join(dir_path, name), "index.html"):
            output_directory = name
            break
    return _technology("Static HTML/CSS", output_directory=output_directory)


def _manifest_probe(*names: str) -> Callable[[str], bool]:
    return lambda dir_path: _exists(dir_path, *names)


# Ordered: the first probe that matches decides the ecosystem
ECOSYSTEM_PROBES = [
    ("bun", _manifest_probe("bunfig.toml", "bun.lockb", "bun.lock"), _detect_bun),
    ("node", _manifest_probe("package.json"), _detect_node),
    ("deno", _is_deno_project, _detect_deno),
    ("python", _manifest_probe("requirements.txt", "Pipfile", "pyproject.toml"), _detect_python),
    ("go", _manifest_probe("go.mod"), _detect_go),
    ("php", _manifest_probe("composer.json"), _detect_php),
    ("ruby", _manifest_probe("Gemfile"), _detect_ruby),
    ("jvm", _manifest_probe("pom.xml", "build.gradle", "build.gradle.kts"), _detect_jvm),
    ("rust", _manifest_probe("Cargo.toml"), _detect_rust),
    ("dotnet", _is_dotnet_project, _detect_dotnet),
    ("elixir", _manifest_probe("mix.exs"), _detect_elixir),
    ("static", _is_static_site, _detect_static),
]


def detect_application(dir_path: str, relative_path: str = ".") -> Optional[DetectedApplication]:
    """
    Detects the application rooted at a single directory.

    Args:
        dir_path: Absolute path of the directory to probe
        relative_path: Path of the directory relative to the checkout

    Returns:
        The detected application, or None if no known manifest is present
    """
    for ecosystem, probe, detect in ECOSYSTEM_PROBES:
        if probe(dir_path):
            application = detect(dir_path).with_path(relative_path)
            logger.info(f"Detected {application.name} ({ecosystem}) at {relative_path}")
            return application
    return None


def detect_project_structure(checkout_path: str) -> ProjectStructure:
    """
    Detects every application in a checkout.

    The checkout root is probed first, then subdirectories with conventional
    service names. When neither yields anything, every remaining subdirectory
    is probed.

    Args:
        checkout_path: Path to the checkout

    Returns:
        ProjectStructure with applications in discovery order

    Raises:
        DetectionFailure: If no application is found anywhere
    """
    logger.info(f"Detecting project structure at {checkout_path}")

    if not os.path.isdir(checkout_path):
        raise DetectionFailure("Checkout path is not a directory", app_path=checkout_path)

    applications: List[DetectedApplication] = []

    root = detect_application(checkout_path, ".")
    if root is not None:
        applications.append(root)

    candidates = [name for name in _subdirectories(checkout_path) if not is_skipped_directory(name)]

    for name in candidates:
        if is_service_root(name):
            application = detect_application(os.path.join(checkout_path, name), name)
            if application is not None:
                applications.append(application)

    if not applications:
        for name in candidates:
            application = detect_application(os.path.join(checkout_path, name), name)
            if application is not None:
                applications.append(application)

    if not applications:
        raise DetectionFailure(
            "Unable to detect framework: no recognized project files found", app_path=checkout_path
        )

    architecture = analyze_architecture(checkout_path, applications)
    return ProjectStructure(applications=applications, architecture=architecture)


# Architecture analysis

# (name, type, is_database, npm packages, python markers, go module markers)
DEPENDENCY_MARKERS = [
    ("postgresql", "relational", True, ("pg", "pg-promise", "postgres"),
     ("psycopg2", "psycopg", "pg8000", "asyncpg"), ("github.com/lib/pq", "github.com/jackc/pgx")),
    ("mysql", "relational", True, ("mysql", "mysql2"),
     ("pymysql", "mysql-connector", "mysqlclient"), ("github.com/go-sql-driver/mysql",)),
    ("mongodb", "nosql", True, ("mongodb", "mongoose"),
     ("pymongo", "motor"), ("go.mongodb.org/mongo-driver",)),
    ("redis", "cache", True, ("redis", "ioredis"),
     ("redis",), ("github.com/redis/go-redis", "github.com/go-redis/redis")),
    ("rabbitmq", "message_queue", False, ("amqplib", "amqp-connection-manager"),
     ("pika", "aio-pika"), ("github.com/rabbitmq/amqp091-go",)),
    ("minio", "storage", False, ("minio", "aws-sdk", "@aws-sdk/client-s3"),
     ("boto3", "minio"), ("github.com/minio/minio-go",)),
]


def _dependency_sources(dir_path: str) -> Tuple[FrozenSet[str], str, str]:
    npm = _package_dependencies(_read_json(os.path.join(dir_path, "package.json")))
    python = _python_manifest_text(dir_path)
    go = _read_text(os.path.join(dir_path, "go.mod")) or ""
    return npm, python, go


def analyze_architecture(
    checkout_path: str, applications: List[DetectedApplication]
) -> ArchitectureInfo:
    """Infers databases and supporting services from each application's manifests."""
    directories = [os.path.normpath(os.path.join(checkout_path, app.path)) for app in applications]
    if len(applications) > 1:
        directories.append(os.path.normpath(checkout_path))

    found: Dict[str, Tuple[str, bool]] = {}
    for directory in dict.fromkeys(directories):
        npm, python, go = _dependency_sources(directory)
        for name, dep_type, is_database, npm_names, python_markers, go_markers in DEPENDENCY_MARKERS:
            if (
                any(n in npm for n in npm_names)
                or any(m in python for m in python_markers)
                or any(m in go for m in go_markers)
            ):
                found.setdefault(name, (dep_type, is_database))

    databases = [
        DatabaseDependency(name=name, type=dep_type)
        for name, (dep_type, is_database) in found.items()
        if is_database
    ]
    services = [
        ServiceDependency(name=name, type=dep_type)
        for name, (dep_type, is_database) in found.items()
        if not is_database
    ]
    return ArchitectureInfo(databases=databases, services=services)
