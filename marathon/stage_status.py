"""Progress tracking of worker pipeline stages, stored in Redis hashes."""

from __future__ import annotations

from typing import Any


class StageStatusError(ValueError):
    """Raised for invalid stage creation or progress beyond the maximum."""


class StageStatus:
    """A stage of a job pipeline whose progress is mirrored to Redis.

    The job hash maps each stage name to its stage key; the stage hash holds
    its description, maximum and current progress.
    """

    def __init__(
        self, client: Any, job_id: str, stage: str, description: str, max_progress: int
    ) -> None:
        if max_progress == 0:
            raise StageStatusError("can't create a stage with 0 maxProgress")
        self.client = client
        self.job_id = job_id
        self.stage = stage
        self.stage_key = f"{job_id}-{stage}"
        self.description = description
        self.max_progress = max_progress
        self.current_progress = 0
        self.completed = False
        self.sub_stages: list[StageStatus] = []

        client.hset(self.stage_key, "description", description)
        client.hset(self.job_id, self.stage, self.stage_key)
        client.hset(self.stage_key, "max", max_progress)
        client.hset(self.stage_key, "current", 0)

    def new_sub_stage(self, description: str, max_progress: int) -> "StageStatus":
        """Create the next numbered sub-stage of this stage."""
        sub = StageStatus(
            self.client,
            self.job_id,
            f"{self.stage}.{len(self.sub_stages) + 1}",
            description,
            max_progress,
        )
        self.sub_stages.append(sub)
        return sub

    def incr_progress(self) -> None:
        """Advance progress by one unit."""
        if self.completed:
            raise StageStatusError("stage is already finished")
        value = int(self.client.hincrby(self.stage_key, "current", 1))
        self.current_progress = value
        if value == self.max_progress:
            self.completed = True