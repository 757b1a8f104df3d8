"""Shared plumbing for the multi-item streaming generators."""

from __future__ import annotations

import logging
from typing import Any

from storylab.models import PromptConfig
from storylab.projects import PROJECTS
from storylab.prompts import PromptTemplateStore, build_full_prompt, resolve_prompt
from storylab.resolver import AdaptorResolution, AdaptorResolver
from storylab.store import DocumentStore
from storylab.uploads import BlobUploader

logger = logging.getLogger(__name__)


def team_name(team: Any, default: str) -> str:
    """Context briefs carry teams either as {"name": ...} or as a bare string."""
    if isinstance(team, dict):
        return team.get("name") or default
    return team or default


def join_pills(pills: Any) -> str:
    if isinstance(pills, list):
        return ", ".join(str(p) for p in pills)
    return pills or ""


def player_lines(players: list[dict], context_brief: dict) -> str:
    lines = []
    for i, player in enumerate(players, 1):
        side = context_brief.get("homeTeam") if player.get("teamId") == "home" else context_brief.get("awayTeam")
        lines.append(
            f"Player {i}: {player.get('name', 'Unknown')} (#{player.get('number', '?')}) - "
            f"{player.get('position') or 'Unknown'} - {team_name(side, 'Unknown Team')}"
        )
    return "\n".join(lines)


class GenerationService:
    stage_type = ""

    def __init__(
        self,
        prompts: PromptTemplateStore,
        resolver: AdaptorResolver,
        db: DocumentStore,
        uploader: BlobUploader,
    ):
        self.prompts = prompts
        self.resolver = resolver
        self.db = db
        self.uploader = uploader

    async def prepare(self, project_id: str, capability: str) -> tuple[PromptConfig, AdaptorResolution]:
        """Load the stage prompt for a capability and resolve the adaptor that runs it."""
        prompt = self.prompts.get_prompt_by_capability(self.stage_type, capability, project_id)
        resolution = await self.resolver.resolve_adaptor(project_id, self.stage_type, capability)
        return prompt, resolution

    @staticmethod
    def render(prompt: PromptConfig, variables: dict[str, Any]) -> str:
        return build_full_prompt(resolve_prompt(prompt, variables))

    def save_to_project(self, project_id: str, fields: dict):
        # Merge so a project created elsewhere keeps its other fields
        self.db.collection(PROJECTS).doc(project_id).set(fields, merge=True)
