"""Stage state machine — per-stage status plus the project's currentStageIndex.

Per stage:  pending -> completed, completed -> pending (re-edit cascade),
            pending -> failed, failed -> pending (retry).
A failed stage must be retried before it can be completed or started.

Every transition is computed as one ``StageUpdate`` so the caller can write it
in a single update call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storylab.errors import ValidationError
from storylab.models import StageExecution, utc_now

logger = logging.getLogger(__name__)

STORYLAB_STAGES = [
    "campaign-details",
    "personas",
    "narrative",
    "storyboard",
    "screenplay",
    "video",
]

FLARELAB_STAGES = [
    "context-brief",
    "concept-gallery",
    "casting-call",
    "high-fidelity-capture",
    "kinetic-activation",
    "polish-download",
]

WORKFLOWS = {
    "storylab": STORYLAB_STAGES,
    "flarelab": FLARELAB_STAGES,
}


@dataclass
class StageUpdate:
    stage_executions: dict[str, StageExecution]
    completion_percentage: int
    current_stage_index: int | None = None  # None leaves the index untouched

    def to_fields(self) -> dict:
        fields = {
            "stageExecutions": {name: s.to_dict() for name, s in self.stage_executions.items()},
            "completionPercentage": self.completion_percentage,
            "updatedAt": utc_now(),
        }
        if self.current_stage_index is not None:
            fields["currentStageIndex"] = self.current_stage_index
        return fields


def is_stale(execution: StageExecution) -> bool:
    """Pending but previously completed: an earlier stage was edited after it ran."""
    return execution.status == "pending" and execution.completed_at is not None


class StageMachine:
    def __init__(self, stages: list[str]):
        if not stages:
            raise ValueError("A workflow needs at least one stage")
        self.stages = list(stages)

    @classmethod
    def for_product(cls, product: str) -> StageMachine:
        stages = WORKFLOWS.get(product)
        if not stages:
            raise ValidationError(f"Unknown product '{product}'. Use one of {', '.join(WORKFLOWS)}")
        return cls(stages)

    @property
    def last_index(self) -> int:
        return len(self.stages) - 1

    def index_of(self, stage_name: str) -> int:
        if stage_name not in self.stages:
            raise ValidationError(f"Unknown stage '{stage_name}'")
        return self.stages.index(stage_name)

    def initial_executions(self) -> dict[str, StageExecution]:
        return {name: StageExecution(stage_name=name) for name in self.stages}

    def executions(self, project: dict) -> dict[str, StageExecution]:
        stored = project.get("stageExecutions") or {}
        return {name: StageExecution.from_dict(name, stored.get(name)) for name in self.stages}

    def completion_percentage(self, executions: dict[str, StageExecution]) -> int:
        done = sum(1 for s in executions.values() if s.status == "completed")
        return round(done / len(self.stages) * 100)

    # -- transitions ---------------------------------------------------------

    def complete_stage(self, project: dict, stage_name: str, data=None) -> StageUpdate:
        index = self.index_of(stage_name)
        current = int(project.get("currentStageIndex", 0))
        executions = self.executions(project)
        now = utc_now()

        stage = executions[stage_name]
        if stage.status == "failed":
            raise ValidationError(f"Stage {stage_name} failed; retry it before completing")
        stage.status = "completed"
        stage.started_at = stage.started_at or now
        stage.completed_at = now
        stage.error = None
        if data is not None:
            stage.data = data

        new_index = None
        if index >= current:
            new_index = min(index + 1, self.last_index)
        else:
            # Re-edit: later stages go back to pending but keep their data
            for later in self.stages[index + 1:]:
                executions[later].status = "pending"
            logger.info(f"Stage {stage_name} re-completed behind current index {current}, later stages reset")

        return StageUpdate(
            stage_executions=executions,
            completion_percentage=self.completion_percentage(executions),
            current_stage_index=new_index,
        )

    def start_stage(self, project: dict, stage_name: str) -> StageUpdate:
        executions = self.executions(project)
        self.index_of(stage_name)
        stage = executions[stage_name]
        if stage.status == "failed":
            raise ValidationError(f"Stage {stage_name} failed; retry it before starting again")
        stage.started_at = utc_now()
        return StageUpdate(executions, self.completion_percentage(executions))

    def fail_stage(self, project: dict, stage_name: str, error: str) -> StageUpdate:
        self.index_of(stage_name)
        executions = self.executions(project)
        stage = executions[stage_name]
        if stage.status != "pending":
            raise ValidationError(f"Only a pending stage can fail (stage {stage_name} is {stage.status})")
        stage.status = "failed"
        stage.error = error
        return StageUpdate(executions, self.completion_percentage(executions))

    def retry_stage(self, project: dict, stage_name: str) -> StageUpdate:
        self.index_of(stage_name)
        executions = self.executions(project)
        stage = executions[stage_name]
        if stage.status != "failed":
            raise ValidationError(f"Only a failed stage can be retried (stage {stage_name} is {stage.status})")
        stage.status = "pending"
        stage.error = None
        return StageUpdate(executions, self.completion_percentage(executions))

    # -- queries -------------------------------------------------------------

    def can_advance(self, project: dict) -> bool:
        current = int(project.get("currentStageIndex", 0))
        return self.executions(project)[self.stages[current]].status == "completed"

    def require_completed(self, project: dict, stage_name: str):
        """Guard used before a stage's output feeds a later stage."""
        self.index_of(stage_name)
        status = self.executions(project)[stage_name].status
        if status != "completed":
            raise ValidationError(f"Stage {stage_name} must be completed first (status: {status})")

    def stale_stages(self, project: dict) -> list[str]:
        return [name for name, s in self.executions(project).items() if is_stale(s)]
