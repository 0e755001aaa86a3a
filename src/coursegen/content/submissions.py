"""Access to SME submission documents held outside the job store."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from coursegen.jobs.errors import NotFoundError, StorageError


class SubmissionReader(Protocol):
    """Protocol implemented by submission document sources."""

    def read(self, *, tenant_id: str, submission_id: str) -> str:
        """Return the submission's text content."""


class FileSubmissionReader:
    """Reads ``<root>/<tenant_id>/<submission_id>.txt``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def read(self, *, tenant_id: str, submission_id: str) -> str:
        path = self.root_dir / tenant_id / f"{submission_id}.txt"
        if not path.exists():
            raise NotFoundError(f"Submission not found: {submission_id}")
        try:
            return path.read_text("utf-8")
        except OSError as error:
            raise StorageError(f"Failed to read submission {path}: {error}") from error
