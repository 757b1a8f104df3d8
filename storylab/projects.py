"""Project service — project documents and their stage transitions."""

from __future__ import annotations

import logging
from typing import Any

from storylab.errors import NotFoundError, ValidationError
from storylab.models import generate_id, utc_now
from storylab.stages import StageMachine, StageUpdate
from storylab.store import DocumentStore

logger = logging.getLogger(__name__)

PROJECTS = "projects"

# Fields the generic payload update may not touch; they move only through stage transitions
_MANAGED_FIELDS = ("id", "product", "currentStageIndex", "stageExecutions", "completionPercentage", "createdAt")


class ProjectService:
    def __init__(self, db: DocumentStore):
        self.db = db

    def create_project(self, product: str, name: str = "", payload: dict | None = None, created_by: str = "system") -> dict:
        machine = StageMachine.for_product(product)
        project_id = generate_id("proj")
        now = utc_now()
        project = {
            **(payload or {}),
            "id": project_id,
            "product": product,
            "name": name,
            "currentStageIndex": 0,
            "stageExecutions": {n: s.to_dict() for n, s in machine.initial_executions().items()},
            "completionPercentage": 0,
            "createdAt": now,
            "updatedAt": now,
            "createdBy": created_by,
        }
        self.db.collection(PROJECTS).doc(project_id).set(project)
        logger.info(f"Created {product} project {project_id}")
        return project

    def get_project(self, project_id: str) -> dict:
        project = self.db.collection(PROJECTS).doc(project_id).get()
        if not project:
            raise NotFoundError(f"Project {project_id} not found", project_id=project_id)
        return project

    def list_projects(self, product: str | None = None) -> list[dict]:
        projects = [p for _, p in self.db.collection(PROJECTS).stream()]
        if product:
            projects = [p for p in projects if p.get("product") == product]
        return sorted(projects, key=lambda p: p.get("updatedAt", ""), reverse=True)

    def delete_project(self, project_id: str):
        self.get_project(project_id)
        self.db.collection(PROJECTS).doc(project_id).delete()

    def machine(self, project: dict) -> StageMachine:
        return StageMachine.for_product(project.get("product", "storylab"))

    # -- payload -------------------------------------------------------------

    def update_payload(self, project_id: str, fields: dict[str, Any]) -> dict:
        """Merge stage-specific payload fields. Dotted keys address nested fields."""
        self.get_project(project_id)
        blocked = [k for k in fields if k.split(".")[0] in _MANAGED_FIELDS]
        if blocked:
            raise ValidationError(f"Use the stage endpoints to change {', '.join(blocked)}")
        self.db.collection(PROJECTS).doc(project_id).update({**fields, "updatedAt": utc_now()})
        return self.get_project(project_id)

    # -- stage transitions ---------------------------------------------------

    def complete_stage(self, project_id: str, stage_name: str, data: Any = None) -> dict:
        project = self.get_project(project_id)
        return self._apply(project_id, self.machine(project).complete_stage(project, stage_name, data))

    def start_stage(self, project_id: str, stage_name: str) -> dict:
        project = self.get_project(project_id)
        return self._apply(project_id, self.machine(project).start_stage(project, stage_name))

    def fail_stage(self, project_id: str, stage_name: str, error: str) -> dict:
        project = self.get_project(project_id)
        return self._apply(project_id, self.machine(project).fail_stage(project, stage_name, error))

    def retry_stage(self, project_id: str, stage_name: str) -> dict:
        project = self.get_project(project_id)
        return self._apply(project_id, self.machine(project).retry_stage(project, stage_name))

    def set_stage_status(self, project_id: str, stage_name: str, status: str, data: Any = None, error: str | None = None) -> dict:
        """Drive a transition from a requested target status."""
        if status == "completed":
            return self.complete_stage(project_id, stage_name, data)
        if status == "failed":
            return self.fail_stage(project_id, stage_name, error or "Stage failed")
        if status == "pending":
            return self.retry_stage(project_id, stage_name)
        raise ValidationError(f"Invalid stage status '{status}'. Use pending, completed or failed")

    def require_stage_completed(self, project_id: str, stage_name: str) -> dict:
        """Load the project, refusing work that builds on a stage that is not completed."""
        project = self.get_project(project_id)
        self.machine(project).require_completed(project, stage_name)
        return project

    def stage_status(self, project_id: str) -> dict:
        project = self.get_project(project_id)
        machine = self.machine(project)
        return {
            "currentStageIndex": project.get("currentStageIndex", 0),
            "currentStage": machine.stages[int(project.get("currentStageIndex", 0))],
            "canAdvance": machine.can_advance(project),
            "staleStages": machine.stale_stages(project),
            "completionPercentage": project.get("completionPercentage", 0),
        }

    def _apply(self, project_id: str, update: StageUpdate) -> dict:
        # One write for the whole transition
        self.db.collection(PROJECTS).doc(project_id).update(update.to_fields())
        return self.get_project(project_id)
