"""Test the streaming generators for themes, player images and animations."""

import asyncio
import json

import pytest

from conftest import StubAdaptor
from storylab.errors import ParseError
from storylab.events import ProgressChannel
from storylab.generation.animations import SCREENPLAY_FALLBACK
from storylab.generation.themes import is_valid_theme, merge_themes
from storylab.recipes.runner import CancellationToken
from storylab.seeds import DEFAULT_RECIPES, DEFAULT_TEMPLATES, seed_defaults


@pytest.fixture
def seeded(services):
    seed_defaults(services.prompts, services.recipes)
    return services


@pytest.fixture
def project_id(seeded):
    return seeded.projects.create_project("flarelab", "Playoffs")["id"]


BRIEF = {
    "sportType": "Hockey",
    "homeTeam": {"name": "Ducks"},
    "awayTeam": "Sharks",
    "contextPills": ["Rivalry", "Playoffs"],
    "campaignGoal": "Social Hype",
}


def run(generator, project_id, request, token=None):
    async def go():
        channel = ProgressChannel("test")
        result = await generator.generate(project_id, request, channel, token)
        return result, channel

    return asyncio.run(go())


def types(channel):
    return [e.type for e in channel.history]


# -- seeds ------------------------------------------------------------------


def test_seed_defaults_is_idempotent(services):
    first = seed_defaults(services.prompts, services.recipes)
    assert first == {"templates": len(DEFAULT_TEMPLATES), "recipes": len(DEFAULT_RECIPES)}
    assert seed_defaults(services.prompts, services.recipes) == {"templates": 0, "recipes": 0}
    assert services.recipes.get_recipe("recipe_persona_generation_v1").stage_type == "stage_2_personas"


# -- themes -----------------------------------------------------------------


def test_is_valid_theme():
    assert is_valid_theme({"title": "Ice", "description": "Cold"})
    assert not is_valid_theme({"title": " ", "description": "Cold"})
    assert not is_valid_theme({"title": "Ice"})
    assert not is_valid_theme("Ice")


def test_merge_themes_replace_keeps_other_categories():
    existing = {
        "themes": [{"id": "h1", "category": "home-team"}, {"id": "a1", "category": "away-team"}],
        "categorizedThemes": {"away-team": {"category": "away-team", "themes": [{"id": "a1"}]}},
    }
    merged = merge_themes(existing, [{"id": "h2", "category": "home-team"}], "home-team", "replace", "m")
    assert [t["id"] for t in merged["themes"]] == ["a1", "h2"]
    assert merged["categorizedThemes"]["away-team"]["themes"] == [{"id": "a1"}]
    assert [t["id"] for t in merged["categorizedThemes"]["home-team"]["themes"]] == ["h2"]
    assert merged["count"] == 2


def test_merge_themes_append():
    existing = {
        "themes": [{"id": "h1", "category": "home-team"}],
        "categorizedThemes": {"home-team": {"category": "home-team", "themes": [{"id": "h1"}]}},
    }
    merged = merge_themes(existing, [{"id": "h2", "category": "home-team"}], "home-team", "append", "m")
    assert [t["id"] for t in merged["themes"]] == ["h1", "h2"]
    assert [t["id"] for t in merged["categorizedThemes"]["home-team"]["themes"]] == ["h1", "h2"]


def test_theme_generation_streams_and_saves(seeded, project_id):
    StubAdaptor.text_responses = [json.dumps([
        {"title": "Frozen Fury", "description": "Ice cracking", "tags": ["ice", "power"]},
        {"title": "", "description": "missing title"},
        {"title": "Night Shift", "description": "Arena lights"},
    ])]
    StubAdaptor.image_responses = ["https://img.test/fury.png", RuntimeError("quota exceeded")]

    themes, channel = run(seeded.themes, project_id, {
        **BRIEF,
        "category": "home-team",
        "numberOfThemes": 3,
    })

    assert [t["title"] for t in themes] == ["Frozen Fury", "Night Shift"]
    assert themes[0]["image"]["url"] == "https://img.test/fury.png"
    assert themes[1]["image"]["error"] == "quota exceeded"

    events = channel.history
    assert events[0].type == "start"
    assert events[-1].type == "complete"
    assert [e.type for e in events].count("theme") == 2
    errors = [e for e in events if e.type == "error"]
    assert len(errors) == 1
    assert errors[0].data["fatal"] is False

    # The text prompt got the brief substituted in
    text_call = next(c for c in StubAdaptor.calls if c[0] == "text")
    assert "Ducks" in text_call[2]
    assert "Rivalry, Playoffs" in text_call[2]

    saved = seeded.projects.get_project(project_id)["conceptGallery"]["aiGeneratedThemes"]
    assert saved["count"] == 2
    assert [t["title"] for t in saved["categorizedThemes"]["home-team"]["themes"]] == ["Frozen Fury", "Night Shift"]


def test_theme_parse_failure_is_fatal(seeded, project_id):
    StubAdaptor.text_responses = ["I cannot produce themes today."]
    with pytest.raises(ParseError):
        run(seeded.themes, project_id, {**BRIEF, "numberOfThemes": 2})
    assert not any(c[0] == "image" for c in StubAdaptor.calls)


def test_theme_generation_stops_when_cancelled(seeded, project_id):
    StubAdaptor.text_responses = [json.dumps([{"title": "A", "description": "a"}, {"title": "B", "description": "b"}])]
    token = CancellationToken()
    token.cancel("client disconnected")
    themes, channel = run(seeded.themes, project_id, {**BRIEF, "numberOfThemes": 2}, token)
    assert len(themes) == 2
    assert not any(c[0] == "image" for c in StubAdaptor.calls)
    assert "complete" not in types(channel)
    assert "conceptGallery" not in seeded.projects.get_project(project_id)


# -- player images ----------------------------------------------------------


def mappings():
    return {
        "t1": {
            "themeId": "t1",
            "themeName": "Frozen Fury",
            "thumbnailUrl": "https://img.test/thumb1.png",
            "selectedPlayers": [
                {"id": "p1", "name": "Ann", "number": "9", "teamId": "home", "photoUrl": "https://img.test/ann.png"},
            ],
        },
        "t2": {
            "themeId": "t2",
            "themeName": "Night Shift",
            "selectedPlayers": [{"id": "p2", "name": "Bo", "number": "4", "teamId": "away"}],
        },
    }


def test_player_images_continue_after_failure(seeded, project_id):
    StubAdaptor.image_responses = [RuntimeError("safety filter"), "https://img.test/night.png"]
    images, channel = run(seeded.images, project_id, {"themePlayerMappings": mappings(), "contextBrief": BRIEF})

    assert images[0]["error"] == "safety filter"
    assert images[1]["url"] == "https://img.test/night.png"
    assert types(channel).count("image") == 1
    assert types(channel)[-1] == "complete"
    assert channel.history[-1].data["successCount"] == 1
    assert channel.history[-1].data["errorCount"] == 1

    # Theme thumbnail first, then the player headshots
    _, _, prompt, options = StubAdaptor.calls[0]
    assert options.reference_images == ["https://img.test/thumb1.png", "https://img.test/ann.png"]
    assert "Player 1: Ann (#9)" in prompt
    assert "Ducks" in prompt

    saved = seeded.projects.get_project(project_id)["highFidelityCapture"]
    assert saved["successCount"] == 1
    assert saved["generatedImages"][1]["players"] == [{"id": "p2", "name": "Bo", "number": "4"}]


# -- animations -------------------------------------------------------------


def test_animation_uses_screenplay_then_fallback(seeded, project_id):
    StubAdaptor.text_responses = [
        json.dumps({"animationConcept": "Stick flip", "screenplay": {}, "videoGenerationPrompt": "Player flips the stick"}),
        "not json at all",
    ]
    images = [
        {"themeId": "t1", "themeName": "Frozen Fury", "url": "https://img.test/1.png"},
        {"themeId": "t2", "themeName": "Night Shift", "url": "https://img.test/2.png"},
    ]
    animations, channel = run(seeded.animations, project_id, {"images": images, "contextBrief": BRIEF})

    assert animations[0]["screenplay"]["animationConcept"] == "Stick flip"
    assert animations[1]["screenplay"]["isFallback"] is True
    assert animations[1]["screenplay"]["videoGenerationPrompt"] == SCREENPLAY_FALLBACK["videoGenerationPrompt"]

    video_calls = [c for c in StubAdaptor.calls if c[0] == "video"]
    assert len(video_calls) == 2
    assert "Player flips the stick" in video_calls[0][2]
    assert video_calls[0][3].reference_images == ["https://img.test/1.png"]
    assert animations[0]["video"]["videoUrl"].startswith("https://vid.test/")

    assert types(channel).count("animation") == 2
    assert types(channel)[-1] == "complete"
    saved = seeded.projects.get_project(project_id)["kineticActivation"]
    assert saved["successCount"] == 2


def test_animation_video_failure_is_not_fatal(seeded, project_id):
    StubAdaptor.video_responses = [RuntimeError("video backend timeout")]
    images = [
        {"themeId": "t1", "themeName": "Frozen Fury", "url": "https://img.test/1.png"},
        {"themeId": "t2", "themeName": "Night Shift", "url": "https://img.test/2.png"},
    ]
    animations, channel = run(seeded.animations, project_id, {"images": images, "contextBrief": BRIEF})

    assert animations[0]["error"] == "video backend timeout"
    assert "video" in animations[1]
    errors = [e for e in channel.history if e.type == "error"]
    assert len(errors) == 1 and errors[0].data["fatal"] is False
    assert channel.history[-1].data["errorCount"] == 1
