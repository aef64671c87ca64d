"""Reads and validates the analysis tool's result artifact."""

from __future__ import annotations

import json
import math
from pathlib import Path

from ipa_check.matching.errors import MalformedResult, ResultNotFound
from ipa_check.matching.models import MatchResult

RESULT_FILE_NAME = "result.json"
SIMILARITY_FIELD = "sim"


class ResultReader:
    """Turns ``<base>/result/<task_id>/result.json`` into a ``MatchResult``.

    Anything other than an object with a finite numeric ``sim`` in ``[0, 1]``
    (and an optional object ``details``) is rejected. There is no fallback
    parsing of stdout and no default score.
    """

    def __init__(self, result_base: Path) -> None:
        self.result_base = result_base

    def result_path(self, task_id: str) -> Path:
        return self.result_base / "result" / task_id / RESULT_FILE_NAME

    def read(self, task_id: str) -> MatchResult:
        path = self.result_path(task_id)
        try:
            raw = path.read_text("utf-8")
        except FileNotFoundError as error:
            raise ResultNotFound(f"Result file not found: {path}") from error
        except (OSError, UnicodeDecodeError) as error:
            raise MalformedResult(f"Result file unreadable: {path} ({error})") from error

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise MalformedResult(f"Result file is not valid JSON: {path} ({error})") from error
        return parse_result_payload(payload, source=path)


def parse_result_payload(payload: object, *, source: Path | str = "<payload>") -> MatchResult:
    """Validate a decoded result document."""

    if not isinstance(payload, dict):
        raise MalformedResult(f"Expected JSON object in {source}, got {type(payload).__name__}")
    if SIMILARITY_FIELD not in payload:
        raise MalformedResult(f"Result in {source} has no {SIMILARITY_FIELD!r} field")

    score = payload[SIMILARITY_FIELD]
    if isinstance(score, bool) or not isinstance(score, int | float):
        raise MalformedResult(
            f"Result field {SIMILARITY_FIELD!r} in {source} must be a number, "
            f"got {type(score).__name__}",
        )
    score = float(score)
    if not math.isfinite(score) or not 0.0 <= score <= 1.0:
        raise MalformedResult(
            f"Result field {SIMILARITY_FIELD!r} in {source} must be within [0, 1], got {score}",
        )

    details = payload.get("details")
    if details is not None and not isinstance(details, dict):
        raise MalformedResult(
            f"Result field 'details' in {source} must be an object, got {type(details).__name__}",
        )
    return MatchResult(similarity_score=score, details=details)
