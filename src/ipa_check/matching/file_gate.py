"""Artifact availability and integrity gate."""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Sequence
from pathlib import Path

from ipa_check.matching.artifact_request import ArtifactRequester
from ipa_check.matching.errors import IntegrityFailure, TimeoutFailure, TransientUnavailable
from ipa_check.matching.models import ArtifactSpec

logger = logging.getLogger(__name__)

HASH_CHUNK_BYTES = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Stream a file through SHA-256 and return the hex digest."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileGate:
    """Blocks task handling until both artifacts are present and intact."""

    def __init__(self, *, requester: ArtifactRequester | None = None) -> None:
        self.requester = requester

    def is_valid(self, path: Path, expected_hash: str | None = None) -> bool:
        try:
            self._check(ArtifactSpec(path=path, expected_hash=expected_hash))
        except (TransientUnavailable, IntegrityFailure):
            return False
        return True

    def wait_until_ready(
        self,
        artifacts: Sequence[ArtifactSpec],
        *,
        max_wait: float,
        poll_interval: float,
        task_id: str | None = None,
    ) -> None:
        """Poll until every artifact is valid or raise once ``max_wait`` elapses.

        Missing files and hash mismatches are both treated as "not yet" while
        the budget lasts, since a file still being transferred is indistinguishable
        from a corrupt one. On expiry the failure is ``IntegrityFailure`` when
        every outstanding artifact exists but hashes wrong, ``TimeoutFailure``
        otherwise.
        """

        deadline = time.monotonic() + max(0.0, max_wait)
        requested = False
        while True:
            problems = self._collect_problems(artifacts)
            if not problems:
                logger.info("All %d artifacts ready for task %s", len(artifacts), task_id or "-")
                return

            if not requested and self.requester is not None and task_id is not None:
                for spec, _ in problems:
                    self.requester.request(task_id=task_id, artifact_path=spec.path)
                requested = True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(max(poll_interval, 0.01), remaining))

        if all(isinstance(error, IntegrityFailure) for _, error in problems):
            raise IntegrityFailure(
                "Artifact integrity check failed: "
                + "; ".join(str(error) for _, error in problems),
            )
        missing = ", ".join(str(spec.path) for spec, _ in problems)
        raise TimeoutFailure(
            f"Timeout after {max_wait:g}s waiting for artifacts: {missing}",
        )

    def _collect_problems(
        self,
        artifacts: Sequence[ArtifactSpec],
    ) -> list[tuple[ArtifactSpec, TransientUnavailable | IntegrityFailure]]:
        problems: list[tuple[ArtifactSpec, TransientUnavailable | IntegrityFailure]] = []
        for spec in artifacts:
            try:
                self._check(spec)
            except (TransientUnavailable, IntegrityFailure) as error:
                problems.append((spec, error))
        return problems

    def _check(self, spec: ArtifactSpec) -> None:
        if not spec.path.is_file():
            raise TransientUnavailable(f"Artifact not present: {spec.path}")
        if not spec.expected_hash:
            return
        try:
            actual = sha256_file(spec.path)
        except OSError as error:
            raise TransientUnavailable(f"Artifact not readable: {spec.path} ({error})") from error
        if actual != spec.expected_hash.strip().lower():
            raise IntegrityFailure(
                f"Hash mismatch for {spec.path.name}: "
                f"expected {spec.expected_hash}, got {actual}",
            )
