"""Best-effort request asking the distribution service to push an artifact."""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REQUEST_PATH = "/api/files/request"


class ArtifactRequester:
    """POSTs file requests to the upstream API; never raises on HTTP errors."""

    def __init__(
        self,
        *,
        base_url: str,
        worker_address: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.worker_address = worker_address
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
            transport=transport,
        )

    def request(self, *, task_id: str, artifact_path: Path) -> bool:
        """Ask for ``artifact_path`` to be delivered; report whether upstream accepted."""

        payload = {
            "task_id": task_id,
            "file_name": artifact_path.name,
            "worker_ip": self.worker_address,
            "worker_storage_path": str(artifact_path.parent.parent.resolve()),
        }
        try:
            response = self._client.post(REQUEST_PATH, json=payload)
        except httpx.TimeoutException:
            logger.warning("Timeout requesting %s for task %s", artifact_path.name, task_id)
            return False
        except httpx.HTTPError as exc:
            logger.warning(
                "HTTP error requesting %s for task %s: %s",
                artifact_path.name,
                task_id,
                exc,
            )
            return False
        if not response.is_success:
            logger.warning(
                "File request for %s (task %s) rejected: HTTP %d",
                artifact_path.name,
                task_id,
                response.status_code,
            )
            return False
        logger.info("Requested file %s for task %s", artifact_path.name, task_id)
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ArtifactRequester:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
