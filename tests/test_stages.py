"""Test the stage state machine and project stage transitions."""

import pytest

from storylab.errors import NotFoundError, ValidationError
from storylab.projects import PROJECTS, ProjectService
from storylab.stages import FLARELAB_STAGES, STORYLAB_STAGES, StageMachine
from storylab.store import InMemoryDocumentRef, InMemoryDocumentStore


@pytest.fixture
def projects():
    return ProjectService(InMemoryDocumentStore())


def statuses(project):
    return {name: s["status"] for name, s in project["stageExecutions"].items()}


def test_machine_for_product():
    assert StageMachine.for_product("storylab").stages == STORYLAB_STAGES
    assert StageMachine.for_product("flarelab").stages == FLARELAB_STAGES
    with pytest.raises(ValidationError):
        StageMachine.for_product("gamelab")


def test_create_project(projects):
    project = projects.create_project("storylab", "Launch")
    assert project["currentStageIndex"] == 0
    assert project["completionPercentage"] == 0
    assert set(statuses(project).values()) == {"pending"}
    assert projects.get_project(project["id"])["name"] == "Launch"


def test_get_missing_project(projects):
    with pytest.raises(NotFoundError):
        projects.get_project("nope")


def test_complete_advances_index(projects):
    project = projects.create_project("storylab")
    project = projects.complete_stage(project["id"], "campaign-details", {"brief": "x"})
    assert project["currentStageIndex"] == 1
    assert project["stageExecutions"]["campaign-details"]["status"] == "completed"
    assert project["stageExecutions"]["campaign-details"]["data"] == {"brief": "x"}
    assert project["completionPercentage"] == 17


def test_index_stops_at_last_stage(projects):
    project = projects.create_project("flarelab")
    for stage in FLARELAB_STAGES:
        project = projects.complete_stage(project["id"], stage)
    assert project["currentStageIndex"] == len(FLARELAB_STAGES) - 1
    assert project["completionPercentage"] == 100


def test_re_edit_cascades_to_later_stages(projects):
    project = projects.create_project("storylab")
    pid = project["id"]
    projects.complete_stage(pid, "campaign-details")
    projects.complete_stage(pid, "personas", {"personas": ["a"]})
    projects.complete_stage(pid, "narrative", {"narrative": "n1"})

    project = projects.complete_stage(pid, "personas", {"personas": ["b"]})
    assert project["currentStageIndex"] == 3
    assert statuses(project) == {
        "campaign-details": "completed",
        "personas": "completed",
        "narrative": "pending",
        "storyboard": "pending",
        "screenplay": "pending",
        "video": "pending",
    }
    # Data survives the reset so the user can see what they had
    assert project["stageExecutions"]["narrative"]["data"] == {"narrative": "n1"}
    assert project["stageExecutions"]["personas"]["data"] == {"personas": ["b"]}
    assert project["completionPercentage"] == 33

    status = projects.stage_status(pid)
    assert status["staleStages"] == ["narrative"]
    assert status["currentStage"] == "storyboard"
    assert status["canAdvance"] is False


def test_fail_and_retry(projects):
    pid = projects.create_project("storylab")["id"]
    project = projects.fail_stage(pid, "campaign-details", "model timeout")
    assert project["stageExecutions"]["campaign-details"]["status"] == "failed"
    assert project["stageExecutions"]["campaign-details"]["error"] == "model timeout"

    with pytest.raises(ValidationError):
        projects.start_stage(pid, "campaign-details")
    with pytest.raises(ValidationError):
        projects.fail_stage(pid, "campaign-details", "again")

    project = projects.retry_stage(pid, "campaign-details")
    assert project["stageExecutions"]["campaign-details"]["status"] == "pending"
    assert "error" not in project["stageExecutions"]["campaign-details"]


def test_failed_stage_cannot_be_completed_until_retried(projects):
    pid = projects.create_project("storylab")["id"]
    projects.fail_stage(pid, "campaign-details", "model timeout")
    with pytest.raises(ValidationError, match="retry it before completing"):
        projects.complete_stage(pid, "campaign-details", {"brief": "x"})
    with pytest.raises(ValidationError):
        projects.set_stage_status(pid, "campaign-details", "completed")
    assert statuses(projects.get_project(pid))["campaign-details"] == "failed"

    projects.retry_stage(pid, "campaign-details")
    project = projects.complete_stage(pid, "campaign-details")
    assert statuses(project)["campaign-details"] == "completed"
    assert project["currentStageIndex"] == 1


def test_retry_requires_failed(projects):
    pid = projects.create_project("storylab")["id"]
    with pytest.raises(ValidationError):
        projects.retry_stage(pid, "personas")


def test_start_stage_records_time(projects):
    pid = projects.create_project("storylab")["id"]
    project = projects.start_stage(pid, "campaign-details")
    assert project["stageExecutions"]["campaign-details"]["startedAt"]
    assert project["currentStageIndex"] == 0


def test_set_stage_status_dispatch(projects):
    pid = projects.create_project("storylab")["id"]
    assert projects.set_stage_status(pid, "campaign-details", "completed")["currentStageIndex"] == 1
    assert statuses(projects.set_stage_status(pid, "personas", "failed", error="x"))["personas"] == "failed"
    assert statuses(projects.set_stage_status(pid, "personas", "pending"))["personas"] == "pending"
    with pytest.raises(ValidationError):
        projects.set_stage_status(pid, "personas", "running")


def test_unknown_stage(projects):
    pid = projects.create_project("storylab")["id"]
    with pytest.raises(ValidationError):
        projects.complete_stage(pid, "concept-gallery")


def test_transition_is_one_update(projects, monkeypatch):
    pid = projects.create_project("storylab")["id"]
    projects.complete_stage(pid, "campaign-details")
    projects.complete_stage(pid, "personas")

    calls = []
    original = InMemoryDocumentRef.update

    def spy(self, data):
        calls.append((self.path, self.id, sorted(data)))
        return original(self, data)

    monkeypatch.setattr(InMemoryDocumentRef, "update", spy)
    projects.complete_stage(pid, "campaign-details")

    assert calls == [(PROJECTS, pid, ["completionPercentage", "stageExecutions", "updatedAt"])]


def test_update_payload_blocks_managed_fields(projects):
    pid = projects.create_project("flarelab")["id"]
    project = projects.update_payload(pid, {"contextBrief.sportType": "Hockey"})
    assert project["contextBrief"] == {"sportType": "Hockey"}
    with pytest.raises(ValidationError):
        projects.update_payload(pid, {"currentStageIndex": 4})


def test_require_completed():
    machine = StageMachine.for_product("flarelab")
    project = {"stageExecutions": {"context-brief": {"status": "completed"}}}
    machine.require_completed(project, "context-brief")
    with pytest.raises(ValidationError):
        machine.require_completed(project, "concept-gallery")


def test_completing_ahead_advances_past_it(projects):
    pid = projects.create_project("storylab")["id"]
    project = projects.complete_stage(pid, "narrative")
    assert project["currentStageIndex"] == 3
    assert statuses(project)["campaign-details"] == "pending"
