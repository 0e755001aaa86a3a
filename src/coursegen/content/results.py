"""Result documents written under a per-tenant directory layout."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from coursegen.jobs.errors import StorageError


class ResultStore:
    """Creates deterministic per-job result paths.

    Layout: ``<root>/tenants/<tenant_id>/jobs/<job_id>/<kind>.json``.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def path_for(self, *, tenant_id: str, job_id: str, kind: str) -> Path:
        return self.root_dir / "tenants" / tenant_id / "jobs" / job_id / f"{kind}.json"

    def write(self, *, tenant_id: str, job_id: str, kind: str, document: dict[str, Any]) -> Path:
        """Persist JSON document using deterministic formatting."""

        path = self.path_for(tenant_id=tenant_id, job_id=job_id, kind=kind)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True),
                "utf-8",
            )
        except OSError as error:
            raise StorageError(f"Failed to write result {path}: {error}") from error
        return path

    def load(self, path: Path) -> dict[str, Any]:
        """Load JSON document and validate top-level object type."""

        try:
            payload = json.loads(path.read_text("utf-8"))
        except OSError as error:
            raise StorageError(f"Failed to read result {path}: {error}") from error
        if not isinstance(payload, dict):
            raise StorageError(f"Expected JSON object in {path}")
        return payload
