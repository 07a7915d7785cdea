from __future__ import annotations

import json
from pathlib import Path
from typing import Any


class ApiSpecError(RuntimeError):
    """Raised when the OpenAPI document cannot be loaded."""


def load_api_spec(path: str | Path, *, server_url: str, description: str | None = None) -> dict[str, Any]:
    """
    Load the OpenAPI document served to the explorer.

    The document's ``servers`` list is replaced by the single configured
    server so "try it out" snippets always point at the same origin.
    """

    spec_path = Path(path)
    try:
        raw = spec_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ApiSpecError(f"Failed to read API spec {spec_path}: {exc}") from exc

    try:
        document = json.loads(raw)
    except ValueError as exc:
        raise ApiSpecError(f"API spec {spec_path} is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise ApiSpecError(f"API spec {spec_path} must be a JSON object")

    server: dict[str, str] = {"url": server_url}
    if description:
        server["description"] = description
    document["servers"] = [server]
    return document
