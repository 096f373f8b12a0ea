"""
API for running a full build of a checkout.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

from obtura.build_mcp_server.api.compose import image_reference, service_names
from obtura.build_mcp_server.api.containerize import generate_build_files
from obtura.build_mcp_server.api.services import BuildServices
from obtura.build_mcp_server.models.artifact import (
    BUILD_FAILED,
    BUILD_PARTIAL,
    BUILD_REJECTED,
    BUILD_SUCCEEDED,
    ApplicationFailure,
    BuildArtifact,
    BuildResult,
)
from obtura.build_mcp_server.utils.docker import CancellationToken, measure_build_context
from obtura.build_mcp_server.utils.errors import (
    BuildCancelled,
    BuildServiceError,
    EngineBuildFailed,
    EnginePushFailed,
    EngineUnavailable,
    QuotaRejected,
    StorageError,
)
from obtura.build_mcp_server.utils.framework_detection import detect_project_structure
from obtura.build_mcp_server.utils.security import ensure_within_root, validate_identifier

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]

TRUNCATION_NOTICE = "Build log limit reached, further output is not forwarded"


def _default_sink(line: str) -> None:
    logger.info(line)


def format_event(event: Dict[str, Any]) -> Optional[str]:
    """Turns an engine event into one log line, or None for events without text."""
    if "stream" in event:
        text = str(event["stream"]).rstrip("\n")
        return text or None
    if "error" in event:
        return f"ERROR: {event['error']}"
    if "status" in event:
        parts = [str(event["status"])]
        if event.get("id"):
            parts.insert(0, f"{event['id']}:")
        if event.get("progress"):
            parts.append(str(event["progress"]))
        return " ".join(parts)
    if "aux" in event and isinstance(event["aux"], dict) and "ID" in event["aux"]:
        return f"Image ID {event['aux']['ID']}"
    return None


class LogForwarder:
    """Forwards engine output to a sink until a byte limit is reached."""

    def __init__(self, sink: LogSink, limit_bytes: int):
        self._sink = sink
        self._limit = limit_bytes
        self.forwarded = 0
        self.truncated = False

    def __call__(self, app_path: str, event: Dict[str, Any]) -> None:
        if self.truncated:
            return
        line = format_event(event)
        if line is None:
            return
        line = f"[{app_path}] {line}"
        size = len(line.encode("utf-8")) + 1
        if self.forwarded + size > self._limit:
            self.truncated = True
            self._sink(TRUNCATION_NOTICE)
            return
        self.forwarded += size
        self._sink(line)


def _read_generated(checkout_path: str, files: List[str]) -> Dict[str, str]:
    contents = {}
    for relative_path in files:
        path = ensure_within_root(checkout_path, relative_path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                contents[relative_path] = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read generated file {relative_path} for the manifest: {e}")
    return contents


def _status(images: Dict[str, str], failures: List[ApplicationFailure]) -> str:
    if not failures:
        return BUILD_SUCCEEDED
    if images:
        return BUILD_PARTIAL
    return BUILD_FAILED


def run_build(
    checkout_path: str,
    tenant_id: str,
    build_id: str,
    services: BuildServices,
    project_id: Optional[str] = None,
    plan_override: Optional[str] = None,
    cancel_token: Optional[CancellationToken] = None,
    log_sink: Optional[LogSink] = None,
) -> BuildResult:
    """
    Detects, admits, generates, builds, pushes and records one build.

    The checkout is detected before admission because the service count is
    one of the admitted limits. Every admitted build releases its concurrent
    slot when it ends, whatever the outcome. A failing application does not
    stop its siblings, and a manifest that cannot be stored does not undo
    pushed images.

    Args:
        checkout_path: Path to the checkout
        tenant_id: Tenant starting the build
        build_id: Identifier of the build
        services: Gatekeeper, image builder and artifact store to use
        project_id: Project the images belong to, defaults to the tenant
        plan_override: Plan name to use instead of the subscription's plan
        cancel_token: Caller cancel flag and deadline
        log_sink: Receives engine output lines, defaults to the logger

    Returns:
        BuildResult

    Raises:
        ValidationError: If an identifier is invalid
        DetectionFailure: If the checkout has no recognizable application
        GenerationError: If a checkout-level build file cannot be written
    """
    validate_identifier(tenant_id, "Tenant ID")
    validate_identifier(build_id, "Build ID")
    project_id = validate_identifier(project_id or tenant_id, "Project ID")

    logger.info(f"Starting build {build_id} for tenant {tenant_id} from {checkout_path}")

    try:
        structure = detect_project_structure(checkout_path)
        named = service_names(structure)
    except BuildServiceError as e:
        raise e.with_context(tenant_id=tenant_id, build_id=build_id)

    context_size = measure_build_context(checkout_path)
    admission = services.gatekeeper.admit(
        tenant_id, context_size, len(structure.applications), plan_override=plan_override
    )
    try:
        admission.raise_for_rejection(tenant_id)
    except QuotaRejected as e:
        e.with_context(build_id=build_id)
        logger.info(f"Build rejected: {e}")
        return BuildResult(
            tenant_id=tenant_id,
            build_id=build_id,
            status=BUILD_REJECTED,
            reason=e.message,
            limit=e.limit,
        )

    quota = admission.quota
    try:
        token = (cancel_token or CancellationToken()).narrowed(quota.max_build_duration_seconds)
        forward = LogForwarder(log_sink or _default_sink, quota.max_build_log_bytes)

        try:
            report = generate_build_files(
                structure,
                checkout_path,
                project_id,
                build_id,
                namespace=services.namespace,
                dockerfile=services.builder.dockerfile,
            )
        except BuildServiceError as e:
            raise e.with_context(tenant_id=tenant_id, build_id=build_id)

        failures = list(report.failures)
        failed_paths = {failure.path for failure in failures}
        images: Dict[str, str] = {}

        for name, application in named.items():
            if application.path in failed_paths:
                continue
            if token.cancelled:
                failures.append(
                    ApplicationFailure(path=application.path, stage="build", error="Build cancelled")
                )
                continue

            reference = services.builder.credentials.qualify(
                image_reference(project_id, name, build_id, services.namespace)
            )
            app_dir = ensure_within_root(checkout_path, application.path)
            stage = "build"
            try:
                for event in services.builder.build(app_dir, reference, token):
                    forward(application.path, event)
                stage = "push"
                for event in services.builder.push(reference, token):
                    forward(application.path, event)
            except (BuildCancelled, EngineUnavailable, EngineBuildFailed, EnginePushFailed) as e:
                e.with_context(tenant_id=tenant_id, build_id=build_id, app_path=application.path)
                logger.error(f"{stage.capitalize()} failed: {e}")
                failures.append(ApplicationFailure(path=application.path, stage=stage, error=str(e)))
                continue

            images[name] = reference
            logger.info(f"Pushed {reference}")

        result = BuildResult(
            tenant_id=tenant_id,
            build_id=build_id,
            status=_status(images, failures),
            images=images,
            failures=failures,
        )

        if images:
            artifact = BuildArtifact(
                tenant_id=tenant_id,
                build_id=build_id,
                image_tag=next(iter(images.values())),
                images=images,
                files=_read_generated(checkout_path, report.files),
            )
            try:
                result.artifact_key = services.store.put(artifact)
            except StorageError as e:
                e.with_context(tenant_id=tenant_id, build_id=build_id)
                logger.error(f"Images pushed but manifest not stored: {e}")
                result.storage_error = str(e)

        if forward.truncated:
            logger.warning(f"Build {build_id} output exceeded {quota.max_build_logs_mb} MB")
        logger.info(f"Build {build_id} for tenant {tenant_id} finished: {result.status}")
        return result
    finally:
        services.gatekeeper.release(tenant_id)


async def build_checkout(
    checkout_path: str,
    tenant_id: str,
    build_id: str,
    services: BuildServices,
    project_id: Optional[str] = None,
    plan_override: Optional[str] = None,
    timeout_seconds: Optional[int] = None,
) -> Dict[str, Any]:
    """Runs a build on a worker thread and returns the result with its captured log."""
    token = CancellationToken.with_timeout(timeout_seconds) if timeout_seconds else CancellationToken()
    log: List[str] = []

    try:
        result = await asyncio.to_thread(
            run_build,
            checkout_path,
            tenant_id,
            build_id,
            services,
            project_id=project_id,
            plan_override=plan_override,
            cancel_token=token,
            log_sink=log.append,
        )
    except asyncio.CancelledError:
        token.cancel()
        raise

    response = result.model_dump(mode="json")
    response["log"] = log
    response["checkout_path"] = os.path.abspath(checkout_path)
    return response
