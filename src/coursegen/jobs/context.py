"""Execution context with named checkpoints and cooperative cancellation."""

from __future__ import annotations

import logging
from enum import Enum

from coursegen.jobs.errors import InvalidStateError, JobCancelled
from coursegen.jobs.models import GenerationJobView
from coursegen.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class Checkpoint(str, Enum):
    """Ordered workflow checkpoints; a handler may skip but never go back."""

    VALIDATE_INPUTS = "validate_inputs"
    GATHER_CONTEXT = "gather_context"
    GENERATE = "generate"
    PARSE_OUTPUT = "parse_output"
    PERSIST_RESULTS = "persist_results"


_CHECKPOINT_ORDER: dict[Checkpoint, int] = {item: index for index, item in enumerate(Checkpoint)}


class JobContext:
    """Tracks the current checkpoint of one job attempt.

    Entering a checkpoint is the only place where cancellation is observed
    and progress is recorded, so external calls are never interrupted.
    """

    def __init__(self, *, job: GenerationJobView, repository: JobRepository) -> None:
        self.job = job
        self.repository = repository
        self.checkpoint: Checkpoint | None = None
        self.visited: list[Checkpoint] = []

    def enter(self, checkpoint: Checkpoint, *, percent: int, message: str) -> None:
        if self.checkpoint is not None and (
            _CHECKPOINT_ORDER[checkpoint] <= _CHECKPOINT_ORDER[self.checkpoint]
        ):
            raise InvalidStateError(
                f"Checkpoint {checkpoint.value} cannot follow {self.checkpoint.value}",
            )
        self.check_cancelled()
        try:
            self.repository.update_progress(
                job_id=self.job.job_id,
                percent=percent,
                message=message,
            )
        except InvalidStateError as error:
            if self.repository.is_cancelled(job_id=self.job.job_id):
                raise JobCancelled(self.job.job_id) from error
            raise
        self.checkpoint = checkpoint
        self.visited.append(checkpoint)
        logger.debug("Job %s entered %s (%d%%)", self.job.job_id, checkpoint.value, percent)

    def check_cancelled(self) -> None:
        if self.repository.is_cancelled(job_id=self.job.job_id):
            raise JobCancelled(self.job.job_id)
