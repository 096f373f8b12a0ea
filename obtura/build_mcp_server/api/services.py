"""
Wiring of the components a build needs.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from obtura.build_mcp_server.api.artifacts import ArtifactStore
from obtura.build_mcp_server.api.quota import QuotaGatekeeper
from obtura.build_mcp_server.models.tables import create_schema, seed_default_plans
from obtura.build_mcp_server.utils.aws import get_storage_client
from obtura.build_mcp_server.utils.docker import EngineClient, ImageBuilder, RegistryCredentials
from obtura.build_mcp_server.utils.errors import StorageError

logger = logging.getLogger(__name__)


class BuildServices:
    """Gatekeeper, image builder and artifact store shared by every build."""

    def __init__(
        self,
        gatekeeper: QuotaGatekeeper,
        builder: ImageBuilder,
        store: ArtifactStore,
        engine: Optional[EngineClient] = None,
        namespace: str = "obtura",
    ):
        self.gatekeeper = gatekeeper
        self.builder = builder
        self.store = store
        self.engine = engine
        self.namespace = namespace


def create_services(config: Dict[str, Any]) -> BuildServices:
    """
    Creates the build components from configuration.

    The quota schema is created and the default plans seeded when missing.
    The container engine is contacted eagerly, but an unreachable engine
    only logs a warning; the builder connects on first use.

    Args:
        config: Configuration from get_config()

    Returns:
        BuildServices
    """
    database_url = config["database_url"]
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    db_engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    create_schema(db_engine)
    session_factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    seeded = seed_default_plans(session_factory)
    if seeded:
        logger.info(f"Seeded {seeded} default build plans")

    engine = EngineClient(base_url=config.get("docker_host"))
    engine.connect()

    builder = ImageBuilder(
        engine,
        RegistryCredentials.from_config(config),
        platform=config["build_platform"],
        dockerfile=config["dockerfile_name"],
    )
    store = ArtifactStore(get_storage_client(config), config["storage_bucket"])
    try:
        store.ensure_bucket()
    except StorageError as e:
        logger.warning(f"Artifact bucket not ready at startup: {e}")

    return BuildServices(
        gatekeeper=QuotaGatekeeper(session_factory),
        builder=builder,
        store=store,
        engine=engine,
        namespace=config["image_namespace"],
    )
