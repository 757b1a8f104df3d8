"""Concept-gallery themes: one text call for the theme list, then one image per theme."""

from __future__ import annotations

import logging
import time
from typing import Any

from storylab.errors import ParseError, StoryLabError
from storylab.events import ProgressChannel
from storylab.generation.base import PROJECTS, GenerationService, join_pills, team_name
from storylab.models import utc_now
from storylab.parsing import extract_json
from storylab.recipes.runner import CancellationToken

logger = logging.getLogger(__name__)


def is_valid_theme(theme: Any) -> bool:
    return (
        isinstance(theme, dict)
        and isinstance(theme.get("title"), str)
        and bool(theme["title"].strip())
        and isinstance(theme.get("description"), str)
        and bool(theme["description"].strip())
    )


def merge_themes(existing: dict, themes: list[dict], category: str, mode: str, model: str) -> dict:
    """Fold freshly generated themes into conceptGallery.aiGeneratedThemes.

    ``replace`` drops earlier themes of the same category, ``append`` keeps them.
    Other categories are never touched.
    """
    flat = list(existing.get("themes") or [])
    categorized = dict(existing.get("categorizedThemes") or {})

    if mode == "append":
        flat = flat + themes
        category_themes = list((categorized.get(category) or {}).get("themes") or []) + themes
    else:
        flat = [t for t in flat if t.get("category") != category] + themes
        category_themes = list(themes)

    categorized[category] = {"category": category, "themes": category_themes, "generatedAt": utc_now()}
    return {
        "themes": flat,
        "categorizedThemes": categorized,
        "generatedAt": utc_now(),
        "model": model,
        "count": len(flat),
    }


class ThemeGenerator(GenerationService):
    stage_type = "stage_2_themes"

    async def generate(
        self,
        project_id: str,
        request: dict,
        channel: ProgressChannel,
        token: CancellationToken | None = None,
    ) -> list[dict]:
        category = request.get("category") or "home-team"
        mode = request.get("mode") or "replace"
        count = int(request.get("numberOfThemes") or 5)
        pills = request.get("contextPills") or []

        channel.start("Starting theme generation")
        channel.progress("Preparing theme generation...", 5, stage="init")

        text_prompt, text_adaptor = await self.prepare(project_id, "text")
        variables = {
            "sportType": request.get("sportType") or "Hockey",
            "homeTeam": team_name(request.get("homeTeam"), "Home Team"),
            "awayTeam": team_name(request.get("awayTeam"), "Away Team"),
            "contextPills": join_pills(pills) or "Playoff Intensity",
            "campaignGoal": request.get("campaignGoal") or "Social Hype",
            "categoryFocus": request.get("categoryName") or "Home Team Focus",
            "categoryModifier": request.get("categoryModifier") or "",
            "numberOfThemes": str(count),
        }

        channel.progress("Creating broadcast-ready themes...", 10, stage="text")
        result = await text_adaptor.adaptor.generate_text(
            self.render(text_prompt, variables), {"temperature": 0.8, "maxTokens": 4000}
        )
        try:
            parsed = extract_json(result.text or "", expect="array")
        except ParseError as e:
            raise ParseError("Failed to parse theme response from AI") from e

        themes: list[dict] = []
        stamp = int(time.time() * 1000)
        for i, raw in enumerate(parsed[:count]):
            if not is_valid_theme(raw):
                logger.warning(f"Skipping malformed theme {i}: {str(raw)[:80]}")
                continue
            theme = {
                "id": f"theme_{stamp}_{i}",
                **raw,
                "category": category,
                "contextMetadata": {
                    "sportType": variables["sportType"],
                    "homeTeam": variables["homeTeam"],
                    "awayTeam": variables["awayTeam"],
                    "contextPills": pills if isinstance(pills, list) else [pills],
                    "campaignGoal": variables["campaignGoal"],
                },
            }
            themes.append(theme)
            channel.item(
                "theme",
                index=len(themes),
                total=count,
                theme=theme,
                progress=10 + round(len(themes) / count * 30),
            )

        channel.progress(f"Generated {len(themes)} themes. Starting image generation...", 40, stage="text-complete")

        if themes:
            await self._render_images(project_id, themes, variables, channel, token)

        if token and token.cancelled:
            logger.info(f"Theme generation for {project_id} stopped: {token.reason}")
            return themes

        channel.progress("Saving themes to project...", 95, stage="saving")
        project = self.db.collection(PROJECTS).doc(project_id).get() or {}
        existing = (project.get("conceptGallery") or {}).get("aiGeneratedThemes") or {}
        self.save_to_project(project_id, {
            "conceptGallery": {"aiGeneratedThemes": merge_themes(existing, themes, category, mode, text_adaptor.model_id)},
            "updatedAt": utc_now(),
        })
        logger.info(f"Saved {len(themes)} {category} themes to {project_id} ({mode})")

        channel.complete(themes=themes, totalProgress=100)
        return themes

    async def _render_images(
        self,
        project_id: str,
        themes: list[dict],
        variables: dict,
        channel: ProgressChannel,
        token: CancellationToken | None,
    ):
        image_prompt, image_adaptor = await self.prepare(project_id, "image")
        total = len(themes)

        for i, theme in enumerate(themes):
            if token and token.cancelled:
                return
            channel.progress(
                f'Rendering theme {i + 1}/{total}: "{theme["title"]}"...',
                40 + round(i / total * 55),
                stage="image",
            )
            tags = theme.get("tags")
            prompt = self.render(image_prompt, {
                **variables,
                "title": theme.get("title", ""),
                "description": theme.get("description", ""),
                "tags": ", ".join(tags) if isinstance(tags, list) else (tags or ""),
            })
            try:
                result = await image_adaptor.adaptor.generate_image(prompt, {"size": "1024x1024"})
                url = self.uploader.ensure_public_url(result.image_url or "", f"{project_id}/themes")
                if not url:
                    raise StoryLabError("No image URL returned from generation")
            except Exception as e:
                logger.error(f"Image for theme {i + 1} failed: {e}", exc_info=True)
                theme["image"] = {"url": None, "error": str(e)}
                channel.error(f"Image for theme {i + 1} failed", error=str(e), themeId=theme["id"])
                continue

            theme["image"] = {
                "url": url,
                "metadata": {
                    "generatedAt": utc_now(),
                    "adaptor": image_adaptor.adaptor_id,
                    "model": image_adaptor.model_id,
                },
            }
            channel.item(
                "image",
                index=i + 1,
                total=total,
                imageUrl=url,
                themeId=theme["id"],
                progress=40 + round((i + 1) / total * 55),
            )
