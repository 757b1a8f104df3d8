"""High-fidelity capture: one composited player image per theme."""

from __future__ import annotations

import logging
import time

from storylab.errors import StoryLabError
from storylab.events import ProgressChannel
from storylab.generation.base import GenerationService, join_pills, player_lines, team_name
from storylab.models import utc_now
from storylab.recipes.runner import CancellationToken

logger = logging.getLogger(__name__)


def _stored_image(image: dict) -> dict:
    """Trim a generated image to the fields kept on the project document."""
    keep = ("id", "themeId", "themeName", "themeCategory", "thumbnailUrl", "url",
            "hasAlphaChannel", "resolution", "generatedAt", "error")
    stored = {k: image[k] for k in keep if image.get(k) is not None}
    stored["players"] = [
        {k: p[k] for k in ("id", "name", "number") if p.get(k) is not None}
        for p in image.get("players") or []
    ]
    return stored


class PlayerImageGenerator(GenerationService):
    stage_type = "stage_4_images"

    async def generate(
        self,
        project_id: str,
        request: dict,
        channel: ProgressChannel,
        token: CancellationToken | None = None,
    ) -> list[dict]:
        mappings = list((request.get("themePlayerMappings") or {}).values())
        brief = request.get("contextBrief") or {}
        total = len(mappings)

        channel.start("Starting image generation", totalThemes=total)
        channel.progress("Preparing image generation...", 5, stage="init", current=0, total=total)
        prompt, adaptor = await self.prepare(project_id, "image")

        images: list[dict] = []
        for i, mapping in enumerate(mappings):
            if token and token.cancelled:
                logger.info(f"Image generation for {project_id} stopped: {token.reason}")
                return images
            index = i + 1
            theme_name = mapping.get("themeName", "")
            players = mapping.get("selectedPlayers") or []
            channel.progress(
                f"Generating image {index}/{total}: {theme_name}",
                10 + round(i / total * 80),
                stage="generating",
                current=index,
                total=total,
            )

            full_prompt = self.render(prompt, {
                "themeName": theme_name,
                "themeDescription": mapping.get("themeDescription", ""),
                "themeCategory": mapping.get("themeCategory", ""),
                "playerInfo": player_lines(players, brief),
                "playerCount": str(len(players)),
                "sportType": brief.get("sportType") or "Hockey",
                "homeTeam": team_name(brief.get("homeTeam"), "Home Team"),
                "awayTeam": team_name(brief.get("awayTeam"), "Away Team"),
                "contextPills": join_pills(brief.get("contextPills")),
                "campaignGoal": brief.get("campaignGoal") or "",
            })
            # Theme thumbnail for style, headshots for likeness
            references = [mapping["thumbnailUrl"]] if mapping.get("thumbnailUrl") else []
            references += [p["photoUrl"] for p in players if p.get("photoUrl")]

            try:
                result = await adaptor.adaptor.generate_image(
                    full_prompt, {"size": "1024x1024", "referenceImageUrl": references or None}
                )
                if not result.image_url:
                    raise StoryLabError("No image URL returned from generation")
                url = self.uploader.ensure_public_url(result.image_url, f"{project_id}/stage4")
            except Exception as e:
                logger.error(f"Image for theme {theme_name} failed: {e}", exc_info=True)
                images.append({
                    "id": f"error-{mapping.get('themeId')}",
                    "themeId": mapping.get("themeId"),
                    "themeName": theme_name,
                    "error": str(e),
                    "generatedAt": utc_now(),
                })
                channel.error(f"Image {index} failed", error=str(e), themeIndex=index, themeName=theme_name)
                continue

            image = {
                "id": f"gen-{mapping.get('themeId')}-{int(time.time() * 1000)}",
                "themeId": mapping.get("themeId"),
                "themeName": theme_name,
                "themeCategory": mapping.get("themeCategory"),
                "thumbnailUrl": mapping.get("thumbnailUrl"),
                "url": url,
                "players": players,
                "hasAlphaChannel": False,
                "resolution": "1920x1080",
                "generatedAt": utc_now(),
            }
            images.append(image)
            channel.item("image", index=index, total=total, themeIndex=index, totalThemes=total, image=image)

        success = sum(1 for img in images if not img.get("error"))
        channel.progress("Saving generated images to project...", 95, stage="saving", current=total, total=total)
        self.save_to_project(project_id, {
            "highFidelityCapture": {
                "generatedImages": [_stored_image(img) for img in images],
                "generatedAt": utc_now(),
                "successCount": success,
                "errorCount": len(images) - success,
            },
            "updatedAt": utc_now(),
        })
        logger.info(f"Saved {len(images)} images to {project_id}")

        channel.complete(generatedImages=images, successCount=success, errorCount=len(images) - success)
        return images
