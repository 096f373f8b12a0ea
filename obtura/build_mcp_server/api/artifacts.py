"""
Artifact store keeping one manifest object per build.
"""

import logging
from typing import Dict, List

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError as ModelValidationError

from obtura.build_mcp_server.models.artifact import BuildArtifact
from obtura.build_mcp_server.utils.errors import ArtifactNotFound, StorageError
from obtura.build_mcp_server.utils.security import validate_identifier

logger = logging.getLogger(__name__)

KEY_PREFIX = "builds"
MANIFEST = "manifest"
NOT_FOUND_CODES = ("404", "NoSuchKey", "NoSuchBucket", "NotFound")


def manifest_key(tenant_id: str, build_id: str) -> str:
    """
    Object key of a build manifest.

    Raises:
        ValidationError: If an identifier contains characters outside [A-Za-z0-9_-]
    """
    validate_identifier(tenant_id, "Tenant ID")
    validate_identifier(build_id, "Build ID")
    return f"{KEY_PREFIX}/{tenant_id}/{build_id}/{MANIFEST}"


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _mismatched_fields(
    artifact: BuildArtifact, tenant_id: str, build_id: str, metadata: Dict[str, str]
) -> List[str]:
    """Fields on which a manifest disagrees with its key or the object metadata put() wrote."""
    expected = {
        "tenant-id": tenant_id,
        "build-id": build_id,
        "image-tag": artifact.image_tag,
        "created-at": artifact.created_at.isoformat(),
    }
    mismatched = [
        name for name, value in expected.items() if name in metadata and metadata[name] != value
    ]
    if artifact.tenant_id != tenant_id:
        mismatched.append("tenant_id")
    if artifact.build_id != build_id:
        mismatched.append("build_id")
    return mismatched


class ArtifactStore:
    """Stores build manifests in an S3 API bucket."""

    def __init__(self, s3_client, bucket: str):
        self._s3 = s3_client
        self.bucket = bucket

    def ensure_bucket(self) -> bool:
        """
        Creates the bucket if it does not exist.

        Returns:
            True if the bucket was created
        """
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            return False
        except ClientError as e:
            if _error_code(e) not in NOT_FOUND_CODES:
                raise StorageError(f"Cannot access bucket {self.bucket}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Cannot reach object storage: {e}") from e

        region = self._s3.meta.region_name
        kwargs = {"Bucket": self.bucket}
        if region and region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self._s3.create_bucket(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to create bucket {self.bucket}: {e}") from e
        logger.info(f"Created bucket {self.bucket}")
        return True

    def put(self, artifact: BuildArtifact) -> str:
        """
        Writes the manifest of a build, replacing any previous one.

        Returns:
            The object key

        Raises:
            StorageError: If the object cannot be written
        """
        key = manifest_key(artifact.tenant_id, artifact.build_id)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=artifact.model_dump_json().encode("utf-8"),
                ContentType="application/json",
                Metadata={
                    "tenant-id": artifact.tenant_id,
                    "build-id": artifact.build_id,
                    "image-tag": artifact.image_tag,
                    "created-at": artifact.created_at.isoformat(),
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to store manifest: {e}",
                tenant_id=artifact.tenant_id,
                build_id=artifact.build_id,
            ) from e
        logger.info(f"Stored manifest {key} in {self.bucket}")
        return key

    def get(self, tenant_id: str, build_id: str) -> BuildArtifact:
        """
        Reads the manifest of a build.

        Raises:
            ArtifactNotFound: If no manifest is stored for the build
            StorageError: If the object cannot be read or parsed, or disagrees
                with its key or metadata
        """
        key = manifest_key(tenant_id, build_id)
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=key)
            body = response["Body"].read()
            metadata = response.get("Metadata") or {}
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ArtifactNotFound(
                    "No manifest stored for build", tenant_id=tenant_id, build_id=build_id
                ) from e
            raise StorageError(
                f"Failed to read manifest: {e}", tenant_id=tenant_id, build_id=build_id
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to read manifest: {e}", tenant_id=tenant_id, build_id=build_id
            ) from e

        try:
            artifact = BuildArtifact.model_validate_json(body)
        except ModelValidationError as e:
            raise StorageError(
                f"Corrupt manifest at {key}: {e}", tenant_id=tenant_id, build_id=build_id
            ) from e

        mismatched = _mismatched_fields(artifact, tenant_id, build_id, metadata)
        if mismatched:
            raise StorageError(
                f"Manifest at {key} disagrees with its key or metadata on {', '.join(mismatched)}",
                tenant_id=tenant_id,
                build_id=build_id,
            )
        return artifact

    def list(self, tenant_id: str) -> List[BuildArtifact]:
        """
        Reads every manifest of a tenant, newest first.

        Manifests that disappear or fail to parse while listing are logged
        and skipped.

        Raises:
            StorageError: If the bucket cannot be listed
        """
        validate_identifier(tenant_id, "Tenant ID")
        prefix = f"{KEY_PREFIX}/{tenant_id}/"

        build_ids = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for item in page.get("Contents", []):
                    parts = item["Key"][len(prefix):].split("/")
                    if len(parts) == 2 and parts[1] == MANIFEST:
                        build_ids.append(parts[0])
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list manifests: {e}", tenant_id=tenant_id) from e

        artifacts = []
        for build_id in build_ids:
            try:
                artifacts.append(self.get(tenant_id, build_id))
            except StorageError as e:
                logger.warning(f"Skipping manifest of build {build_id}: {e}")

        artifacts.sort(key=lambda artifact: artifact.created_at, reverse=True)
        return artifacts

    def delete(self, tenant_id: str, build_id: str) -> None:
        """
        Deletes the manifest of a build.

        Raises:
            ArtifactNotFound: If no manifest is stored for the build
            StorageError: If the object cannot be deleted
        """
        key = manifest_key(tenant_id, build_id)
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise ArtifactNotFound(
                    "No manifest stored for build", tenant_id=tenant_id, build_id=build_id
                ) from e
            raise StorageError(
                f"Failed to delete manifest: {e}", tenant_id=tenant_id, build_id=build_id
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to delete manifest: {e}", tenant_id=tenant_id, build_id=build_id
            ) from e
        logger.info(f"Deleted manifest {key} from {self.bucket}")
