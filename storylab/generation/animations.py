"""Kinetic activation: screenplay from each image, then a short video from the screenplay."""

from __future__ import annotations

import asyncio
import logging

from storylab import config
from storylab.events import ProgressChannel
from storylab.generation.base import GenerationService, join_pills, player_lines, team_name
from storylab.models import utc_now
from storylab.parsing import parse_or_fallback
from storylab.recipes.runner import CancellationToken

logger = logging.getLogger(__name__)

# Used when the screenplay model does not return parseable JSON
SCREENPLAY_FALLBACK = {
    "imageAnalysis": "Unable to parse image analysis",
    "animationConcept": "Standard sports animation",
    "screenplay": {
        "second1": "0:00-0:01: Subtle ambient movement",
        "second2": "0:01-0:02: Continued movement",
        "second3": "0:02-0:03: Building intensity",
        "second4": "0:03-0:04: Return to start",
    },
    "videoGenerationPrompt": "Create a subtle 4-second animation with gentle movement. No camera movement. No audio.",
    "isFallback": True,
}


class AnimationGenerator(GenerationService):
    stage_type = "stage_5_animation"

    def __init__(self, *args, item_delay: float | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.item_delay = config.ANIMATION_ITEM_DELAY if item_delay is None else item_delay

    async def generate_screenplay(self, project_id: str, image: dict, brief: dict) -> dict:
        prompt, adaptor = await self.prepare(project_id, "text")
        full_prompt = self.render(prompt, {
            "sportType": brief.get("sportType") or "Hockey",
            "homeTeam": team_name(brief.get("homeTeam"), "Home Team"),
            "awayTeam": team_name(brief.get("awayTeam"), "Away Team"),
            "themeName": image.get("themeName") or "Sports Theme",
            "themeDescription": image.get("themeDescription") or "",
            "contextPills": join_pills(brief.get("contextPills")),
            "campaignGoal": brief.get("campaignGoal") or "Social Hype",
            "playerInfo": player_lines(image.get("players") or [], brief) or "No specific players featured",
        })
        result = await adaptor.adaptor.generate_text(
            full_prompt, {"referenceImageUrl": image.get("url"), "responseFormat": "json"}
        )
        screenplay, _ = parse_or_fallback(
            result.text or "", SCREENPLAY_FALLBACK, expect="object", label=f"screenplay for {image.get('themeName')}"
        )
        return screenplay

    async def generate_video(self, project_id: str, image: dict, screenplay: dict, brief: dict) -> dict:
        prompt, adaptor = await self.prepare(project_id, "video")
        # Team and player names stay out of the video prompt
        full_prompt = self.render(prompt, {
            "videoGenerationPrompt": screenplay.get("videoGenerationPrompt", ""),
            "sportType": brief.get("sportType") or "Hockey",
            "campaignGoal": brief.get("campaignGoal") or "Social Hype",
        })
        result = await adaptor.adaptor.generate_video(full_prompt, {
            "referenceImageUrl": image.get("url"),
            "durationSeconds": config.ANIMATION_DURATION_SECONDS,
            "aspectRatio": "16:9",
        })
        return {
            "themeId": image.get("themeId"),
            "themeName": image.get("themeName"),
            "videoUrl": result.video_url,
            "duration": f"{config.ANIMATION_DURATION_SECONDS}s",
            "aspectRatio": "16:9",
            "generatedAt": utc_now(),
            "metadata": {"model": result.model, "adaptor": adaptor.adaptor_id},
        }

    async def generate(
        self,
        project_id: str,
        request: dict,
        channel: ProgressChannel,
        token: CancellationToken | None = None,
    ) -> list[dict]:
        images = request.get("images") or []
        brief = request.get("contextBrief") or {}
        total = len(images)
        results: list[dict] = []

        channel.start("Starting animation generation", totalImages=total)
        channel.progress("Preparing animation generation...", 0, stage="init", current=0, total=total)

        for i, image in enumerate(images):
            if token and token.cancelled:
                logger.info(f"Animation generation for {project_id} stopped: {token.reason}")
                return results
            index = i + 1
            name = image.get("themeName", "")
            base = round(i / total * 90)
            channel.progress(f"Processing {index}/{total}: {name}", base, stage="generating", current=index, total=total)

            try:
                screenplay = await self.generate_screenplay(project_id, image, brief)
                channel.progress(
                    "Animation concept ready, starting video generation...",
                    base + round(0.4 * 90 / total),
                    stage="screenplay_complete",
                    current=index,
                    total=total,
                )
                video = await self.generate_video(project_id, image, screenplay, brief)
            except Exception as e:
                logger.error(f"Animation for {name} failed: {e}", exc_info=True)
                results.append({
                    "themeId": image.get("themeId"),
                    "themeName": name,
                    "error": str(e),
                    "generatedAt": utc_now(),
                })
                channel.error(f"Animation {index} failed", error=str(e), imageIndex=index, themeName=name)
                continue

            animation = {
                "themeId": image.get("themeId"),
                "themeName": name,
                "imageUrl": image.get("url"),
                "screenplay": screenplay,
                "video": video,
                "generatedAt": utc_now(),
            }
            results.append(animation)
            channel.item("animation", index=index, total=total, imageIndex=index, totalImages=total, animation=animation)

            if self.item_delay and i < total - 1:
                await asyncio.sleep(self.item_delay)

        success = sum(1 for r in results if not r.get("error"))
        channel.progress("Saving animations to project...", 95, stage="saving", current=total, total=total)
        self.save_to_project(project_id, {
            "kineticActivation": {
                "animations": results,
                "generatedAt": utc_now(),
                "successCount": success,
                "errorCount": len(results) - success,
            },
            "updatedAt": utc_now(),
        })
        channel.complete(animations=results, successCount=success, errorCount=len(results) - success)
        return results
