"""
Challenge stores: publish and delete http-01 key authorizations at
``.well-known/acme-challenge/<token>`` where the domain's public HTTP
endpoint serves them.

Provides:
  ChallengeStore (ABC)
      put(path, content) / delete(path); both raise TransientError for
      retryable failures.

  AzureBlobChallengeStore - Azure Blob Storage container (typically the
                            ``$web`` static-website container)
  WebrootChallengeStore   - a directory served by an existing web server

  make_challenge_store() -> ChallengeStore
      Factory that reads settings and returns the configured store.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from acmev2.errors import TransientError
from acmev2.models import CHALLENGE_PATH_PREFIX
from storage.atomic import atomic_write_bytes

logger = logging.getLogger(__name__)


# ─── Store ABC ────────────────────────────────────────────────────────────────


class ChallengeStore(ABC):
    """Abstract base for publishing challenge content."""

    @abstractmethod
    def put(self, path: str, content: bytes) -> None:
        """Publish *content* at *path*, overwriting any previous blob.

        Raises TransientError when the failure is worth retrying.
        """

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove *path*.  A missing object counts as already deleted.

        Raises TransientError when the failure is worth retrying.
        """

    @staticmethod
    def _check_path(path: str) -> str:
        token = path[len(CHALLENGE_PATH_PREFIX):] if path.startswith(CHALLENGE_PATH_PREFIX) else ""
        if not token or "/" in token or "\\" in token or token in (".", ".."):
            raise ValueError(f"Not a challenge path: {path!r}")
        return path


# ─── Azure Blob Storage ───────────────────────────────────────────────────────


class AzureBlobChallengeStore(ChallengeStore):
    """Challenge store backed by an Azure Blob Storage container."""

    def __init__(
        self,
        account_url: str = "",
        container: str = "$web",
        credential: Any = None,
        container_client: Any = None,
    ) -> None:
        try:
            from azure.core import exceptions as az_exc
            from azure.storage.blob import ContentSettings
        except ImportError as exc:
            raise ImportError(
                "azure-storage-blob is required for CHALLENGE_STORE='azure_blob'. "
                "Install it with: pip install '.[azure]'"
            ) from exc

        self._az_exc = az_exc
        self._content_settings = ContentSettings(content_type="text/plain")
        self._container_name = container

        if container_client is None:
            from azure.storage.blob import BlobServiceClient

            if credential is None:
                from azure.identity import DefaultAzureCredential

                credential = DefaultAzureCredential()
            container_client = BlobServiceClient(account_url=account_url, credential=credential).get_container_client(
                container
            )
        self._container = container_client

    def _transient(self, exc: Exception, action: str, path: str) -> Optional[TransientError]:
        """Return a TransientError for retryable azure-core failures, else None."""
        status = getattr(exc, "status_code", None)
        if isinstance(exc, (self._az_exc.ServiceRequestError, self._az_exc.ServiceResponseError)) or (
            status is not None and (status == 429 or status >= 500)
        ):
            return TransientError(f"Azure blob {action} of {path} failed: {exc}")
        return None

    def put(self, path: str, content: bytes) -> None:
        self._check_path(path)
        try:
            self._container.upload_blob(
                name=path, data=content, overwrite=True, content_settings=self._content_settings
            )
        except self._az_exc.AzureError as exc:
            transient = self._transient(exc, "upload", path)
            if transient is not None:
                raise transient from exc
            raise
        logger.info("Uploaded challenge blob %s/%s", self._container_name, path)

    def delete(self, path: str) -> None:
        self._check_path(path)
        try:
            self._container.delete_blob(path)
        except self._az_exc.ResourceNotFoundError:
            logger.debug("Challenge blob %s already absent", path)
            return
        except self._az_exc.AzureError as exc:
            transient = self._transient(exc, "delete", path)
            if transient is not None:
                raise transient from exc
            raise
        logger.info("Deleted challenge blob %s/%s", self._container_name, path)


# ─── Webroot ──────────────────────────────────────────────────────────────────


class WebrootChallengeStore(ChallengeStore):
    """
    Writes challenge files under an existing web-server root:
      <webroot>/.well-known/acme-challenge/<token>
    """

    def __init__(self, webroot_path: str) -> None:
        self.webroot = Path(webroot_path)

    def put(self, path: str, content: bytes) -> None:
        target = self.webroot / self._check_path(path)
        try:
            atomic_write_bytes(target, content, mode=0o644)
        except OSError as exc:
            raise TransientError(f"Writing {target} failed: {exc}") from exc
        logger.info("Wrote webroot challenge %s", target)

    def delete(self, path: str) -> None:
        target = self.webroot / self._check_path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug("Webroot challenge %s already absent", target)
            return
        except OSError as exc:
            raise TransientError(f"Removing {target} failed: {exc}") from exc
        logger.info("Removed webroot challenge %s", target)


# ─── Factory ──────────────────────────────────────────────────────────────────


def make_challenge_store(kind: Optional[str] = None) -> ChallengeStore:
    """Instantiate the configured store (reads settings at call time)."""
    from config import settings  # late import to avoid circular dependency

    kind = kind or settings.CHALLENGE_STORE
    if kind == "azure_blob":
        if not settings.AZURE_STORAGE_ACCOUNT_URL:
            raise ValueError("AZURE_STORAGE_ACCOUNT_URL must be set when CHALLENGE_STORE='azure_blob'")
        return AzureBlobChallengeStore(
            account_url=settings.AZURE_STORAGE_ACCOUNT_URL,
            container=settings.AZURE_STORAGE_CONTAINER,
        )
    if kind == "webroot":
        return WebrootChallengeStore(settings.WEBROOT_PATH or "")
    raise ValueError(f"Unknown CHALLENGE_STORE: {kind!r}. Must be one of: azure_blob, webroot")
