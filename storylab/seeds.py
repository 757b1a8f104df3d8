"""Default prompt templates and sample recipes loaded into an empty store."""

from __future__ import annotations

import logging

from storylab.prompts import PromptTemplateStore
from storylab.recipes.manager import RecipeManager

logger = logging.getLogger(__name__)


def _var(name: str, description: str, placeholder: str = "") -> dict:
    return {"name": name, "description": description, "placeholder": placeholder}


# ---------------------------------------------------------------------------
# FlareLab templates
# ---------------------------------------------------------------------------

THEMES_TEMPLATE = {
    "stageType": "stage_2_themes",
    "name": "Default Theme Generation",
    "isDefault": True,
    "prompts": {
        "text": {
            "name": "Broadcast themes",
            "systemPrompt": (
                "You are an elite Sports Broadcasting Creative Director. You create visual themes that "
                "work for TV overlays, social posts and stadium displays, respect team branding and "
                "match the campaign goal."
            ),
            "userPromptTemplate": (
                "Sport: {{sportType}}\n"
                "Home team: {{homeTeam}}\n"
                "Away team: {{awayTeam}}\n"
                "Game context: {{contextPills}}\n"
                "Campaign goal: {{campaignGoal}}\n"
                "Category focus: {{categoryFocus}}\n\n"
                "Generate {{numberOfThemes}} unique visual themes for this category. {{categoryModifier}}\n\n"
                "Each theme needs a catchy broadcast-ready title (2-4 words) and a 3-4 sentence visual "
                "description covering lighting, background, composition and mood. Images are generated "
                "from headshots, so favour portrait compositions.\n\n"
                'Return ONLY a JSON array: [{"title": "...", "description": "...", "tags": ["..."]}]'
            ),
            "outputFormat": "json",
            "modelConfig": {"adaptorId": "gemini", "modelId": "gemini-2.0-flash"},
        },
        "image": {
            "name": "Theme image",
            "systemPrompt": (
                "You are an AI Visual Director for sports broadcast graphics. Respect team colours, "
                "keep a broadcast-quality finish and use lighting and atmosphere for drama."
            ),
            "userPromptTemplate": (
                "Sport: {{sportType}}. Matchup: {{homeTeam}} vs {{awayTeam}}. Context: {{contextPills}}. "
                "Goal: {{campaignGoal}}. Category: {{categoryFocus}}.\n\n"
                "Theme: {{title}}\n{{description}}\nTags: {{tags}}\n\n{{categoryModifier}}\n\n"
                "Create a single broadcast-quality graphic of a {{sportType}} player in team jersey that "
                "matches the description. Avoid stock-photo looks and cartoonish styles."
            ),
            "outputFormat": "text",
        },
    },
    "variables": [
        _var("sportType", "Type of sport", "Hockey"),
        _var("homeTeam", "Home team name"),
        _var("awayTeam", "Away team name"),
        _var("contextPills", "Game context tags", "Playoff Intensity"),
        _var("campaignGoal", "Social Hype, Broadcast B-Roll or Stadium Ribbon", "Social Hype"),
        _var("categoryFocus", "Theme category being generated", "Home Team Focus"),
        _var("categoryModifier", "Extra guidance for the category"),
        _var("numberOfThemes", "How many themes to generate", "5"),
        _var("title", "Theme title (image prompt)"),
        _var("description", "Theme description (image prompt)"),
        _var("tags", "Theme tags (image prompt)"),
    ],
}

PLAYERS_TEMPLATE = {
    "stageType": "stage_3_players",
    "name": "Default Player Recommendation",
    "isDefault": True,
    "prompts": {
        "text": {
            "systemPrompt": "You are a sports casting director who picks the players that best fit a visual theme.",
            "userPromptTemplate": (
                "Sport: {{sportType}}. Matchup: {{homeTeam}} vs {{awayTeam}}. Context: {{contextPills}}. "
                "Goal: {{campaignGoal}}.\n\n"
                "Theme: {{themeName}} ({{themeCategory}})\n{{themeDescription}}\n\n"
                "Available players:\n{{availablePlayers}}\n\n"
                "Recommend {{playerCount}} players. Return ONLY a JSON array: "
                '[{"playerId": "...", "reason": "..."}]'
            ),
            "outputFormat": "json",
        },
    },
    "variables": [
        _var("themeName", "Theme title"),
        _var("themeDescription", "Theme description"),
        _var("themeCategory", "Theme category"),
        _var("playerCount", "Players to recommend", "1"),
        _var("availablePlayers", "Roster, one player per line"),
    ],
}

IMAGES_TEMPLATE = {
    "stageType": "stage_4_images",
    "name": "Player Theme Composite",
    "isDefault": True,
    "prompts": {
        "image": {
            "systemPrompt": (
                "You composite real players into a themed sports graphic. The first reference image sets "
                "the style; the remaining references are player headshots whose likeness must be kept."
            ),
            "userPromptTemplate": (
                "Theme: {{themeName}} ({{themeCategory}})\n{{themeDescription}}\n\n"
                "Featured players ({{playerCount}}):\n{{playerInfo}}\n\n"
                "Sport: {{sportType}}. Matchup: {{homeTeam}} vs {{awayTeam}}. Context: {{contextPills}}. "
                "Goal: {{campaignGoal}}.\n\n"
                "Produce a 16:9 broadcast-ready image with accurate jerseys and dramatic lighting."
            ),
            "outputFormat": "text",
        },
    },
    "variables": [
        _var("themeName", "Theme title"),
        _var("themeDescription", "Theme description"),
        _var("themeCategory", "Theme category"),
        _var("playerInfo", "One line per featured player"),
        _var("playerCount", "Number of featured players"),
    ],
}

ANIMATION_TEMPLATE = {
    "stageType": "stage_5_animation",
    "name": "Animation Screenplay and Video",
    "isDefault": True,
    "prompts": {
        "text": {
            "name": "Screenplay",
            "systemPrompt": (
                "You are a Sports Motion Graphics Director. You design short, subtle animations where the "
                "players themselves move."
            ),
            "userPromptTemplate": (
                "Analyse the attached image and design a 4-second animation.\n\n"
                "Sport: {{sportType}}. Home: {{homeTeam}}. Away: {{awayTeam}}.\n"
                "Theme: {{themeName}}\n{{themeDescription}}\n"
                "Context: {{contextPills}}. Goal: {{campaignGoal}}.\n\n"
                "Featured players:\n{{playerInfo}}\n\n"
                "No camera movement. No audio. The videoGenerationPrompt must not contain real team or "
                "player names.\n\n"
                "Return ONLY JSON: {\"imageAnalysis\": \"...\", \"animationConcept\": \"...\", "
                "\"screenplay\": {\"second1\": \"...\", \"second2\": \"...\", \"second3\": \"...\", "
                "\"second4\": \"...\"}, \"videoGenerationPrompt\": \"...\"}"
            ),
            "outputFormat": "json",
        },
        "video": {
            "name": "Video",
            "systemPrompt": "",
            "userPromptTemplate": (
                "{{videoGenerationPrompt}}\n\n"
                "Style: professional {{sportType}} broadcast graphic for {{campaignGoal}}. "
                "Static camera. Silent."
            ),
            "outputFormat": "text",
            "modelConfig": {"adaptorId": "gemini", "modelId": "veo-3.1-generate-preview"},
        },
    },
    "variables": [
        _var("themeName", "Theme title"),
        _var("themeDescription", "Theme description"),
        _var("playerInfo", "One line per featured player"),
        _var("videoGenerationPrompt", "Prompt produced by the screenplay step"),
    ],
}

# ---------------------------------------------------------------------------
# StoryLab templates
# ---------------------------------------------------------------------------

PERSONAS_TEMPLATE = {
    "stageType": "stage_2_personas",
    "name": "Default Persona Generation",
    "isDefault": True,
    "prompts": {
        "text": {
            "systemPrompt": "You are an expert Casting Director and Consumer Psychologist.",
            "userPromptTemplate": (
                "Product: {{productDescription}}\nTarget audience: {{targetAudience}}\n\n"
                "Create {{numberOfPersonas}} diverse, believable UGC creator personas who would genuinely "
                "recommend this product. Return ONLY a JSON array of objects with name, age, demographic, "
                "motivation, bio and appearance."
            ),
            "outputFormat": "json",
        },
        "image": {
            "systemPrompt": "",
            "userPromptTemplate": (
                "Natural, UGC-style portrait photo of {{name}}, {{age}}. {{appearance}}. "
                "Soft daylight, phone-camera framing."
            ),
            "outputFormat": "text",
        },
    },
    "variables": [
        _var("productDescription", "What the product is"),
        _var("targetAudience", "Who the product is for"),
        _var("numberOfPersonas", "Personas to create", "3"),
    ],
}

NARRATIVES_TEMPLATE = {
    "stageType": "stage_3_narratives",
    "name": "Default Narrative Generation",
    "isDefault": True,
    "prompts": {
        "text": {
            "systemPrompt": "You are a short-form video storyteller.",
            "userPromptTemplate": (
                "Product: {{productDescription}}\nPersona: {{persona}}\n\n"
                "Write {{numberOfNarratives}} narrative options for a 30-second UGC video. Return ONLY a JSON "
                "array of objects with title, hook, story and callToAction."
            ),
            "outputFormat": "json",
        },
    },
    "variables": [
        _var("productDescription", "What the product is"),
        _var("persona", "Selected persona, as JSON"),
        _var("numberOfNarratives", "Options to write", "3"),
    ],
}

STORYBOARD_TEMPLATE = {
    "stageType": "stage_4_storyboard",
    "name": "Default Storyboard Generation",
    "isDefault": True,
    "prompts": {
        "text": {
            "systemPrompt": "You are a storyboard artist for social video.",
            "userPromptTemplate": (
                "Narrative: {{narrative}}\nPersona: {{persona}}\n\n"
                "Break the narrative into {{numberOfScenes}} scenes. Return ONLY a JSON array of objects "
                "with sceneNumber, description, cameraAngle and visualPrompt."
            ),
            "outputFormat": "json",
        },
        "image": {
            "systemPrompt": "",
            "userPromptTemplate": "Storyboard frame: {{visualPrompt}}. Camera: {{cameraAngle}}.",
            "outputFormat": "text",
        },
    },
    "variables": [
        _var("narrative", "Selected narrative, as JSON"),
        _var("persona", "Selected persona, as JSON"),
        _var("numberOfScenes", "Scenes to produce", "4"),
    ],
}

SCREENPLAY_TEMPLATE = {
    "stageType": "stage_5_screenplay",
    "name": "Default Screenplay Generation",
    "isDefault": True,
    "prompts": {
        "text": {
            "systemPrompt": "You write tight, timed screenplays for short vertical videos.",
            "userPromptTemplate": (
                "Storyboard: {{storyboard}}\nPersona: {{persona}}\n\n"
                "Write the screenplay. Return ONLY a JSON array of objects with sceneNumber, timeStart, "
                "timeEnd, visual, cameraFlow and dialogue."
            ),
            "outputFormat": "json",
        },
    },
    "variables": [
        _var("storyboard", "Storyboard scenes, as JSON"),
        _var("persona", "Selected persona, as JSON"),
    ],
}

VIDEO_TEMPLATE = {
    "stageType": "stage_6_video",
    "name": "Default Video Generation",
    "isDefault": True,
    "prompts": {
        "video": {
            "systemPrompt": "",
            "userPromptTemplate": "{{sceneDescription}}\n\nDialogue: {{dialogue}}\nCamera: {{cameraFlow}}",
            "outputFormat": "text",
        },
    },
    "variables": [
        _var("sceneDescription", "What happens in the scene"),
        _var("dialogue", "Spoken lines"),
        _var("cameraFlow", "Camera direction"),
    ],
}

DEFAULT_TEMPLATES = [
    THEMES_TEMPLATE,
    PLAYERS_TEMPLATE,
    IMAGES_TEMPLATE,
    ANIMATION_TEMPLATE,
    PERSONAS_TEMPLATE,
    NARRATIVES_TEMPLATE,
    STORYBOARD_TEMPLATE,
    SCREENPLAY_TEMPLATE,
    VIDEO_TEMPLATE,
]

# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

PERSONA_RECIPE = {
    "id": "recipe_persona_generation_v1",
    "name": "Persona Generation Pipeline",
    "description": "Generate persona details, then a portrait for the first persona",
    "stageType": "stage_2_personas",
    "nodes": [
        {
            "id": "generate_persona_details",
            "name": "Generate Persona Details",
            "type": "text_generation",
            "inputMapping": {
                "productDescription": {"source": "external_input.productDescription", "required": True},
                "targetAudience": {"source": "external_input.targetAudience", "required": True},
                "numberOfPersonas": {"source": "external_input.numberOfPersonas", "sampleData": 3},
            },
            "outputKey": "personaDetails",
            "aiModel": {"provider": "gemini", "modelName": "gemini-2.0-flash", "temperature": 0.7, "maxTokens": 2000},
            "prompt": (
                "Create {{numberOfPersonas}} diverse UGC creator personas for {{productDescription}} "
                "targeting {{targetAudience}}. Return ONLY a JSON array of objects with name, age and "
                "appearance."
            ),
            "outputFormat": "json",
            "errorHandling": {"onError": "retry"},
        },
        {
            "id": "generate_persona_image",
            "name": "Generate Persona Image",
            "type": "image_generation",
            "inputMapping": {
                "name": "node_generate_persona_details.personaDetails.0.name",
                "age": "node_generate_persona_details.personaDetails.0.age",
                "appearance": "node_generate_persona_details.personaDetails.0.appearance",
            },
            "outputKey": "personaImage",
            "aiModel": {"provider": "gemini", "modelName": "imagen-3.0-generate-001"},
            "prompt": "Natural UGC-style portrait of {{name}}, {{age}}. {{appearance}}. Soft daylight.",
            "errorHandling": {"onError": "skip"},
            "dependencies": ["generate_persona_details"],
            "parameters": {"resolution": "1024x1024", "aspectRatio": "1:1"},
        },
        {
            "id": "collect_personas",
            "name": "Collect Personas",
            "type": "data_processing",
            "inputMapping": {
                "personas": "node_generate_persona_details.personaDetails",
                "image": "node_generate_persona_image.personaImage",
            },
            "outputKey": "personas",
            "parameters": {"operation": "passthrough"},
        },
    ],
    "edges": [
        {"from": "generate_persona_details", "to": "generate_persona_image"},
        {"from": "generate_persona_details", "to": "collect_personas"},
        {"from": "generate_persona_image", "to": "collect_personas"},
    ],
    "metadata": {"tags": ["personas", "sample"]},
}

DEFAULT_RECIPES = [PERSONA_RECIPE]


def seed_defaults(prompts: PromptTemplateStore, recipes: RecipeManager) -> dict:
    """Insert default templates for stages with none, and sample recipes that are missing."""
    added_templates = 0
    for template in DEFAULT_TEMPLATES:
        if prompts.list_templates(template["stageType"]):
            continue
        prompts.add_template(template["stageType"], template)
        added_templates += 1

    existing = {r.id for r in recipes.list_recipes(active_only=False)}
    added_recipes = 0
    for recipe in DEFAULT_RECIPES:
        if recipe["id"] in existing:
            continue
        recipes.create_recipe(recipe)
        added_recipes += 1

    if added_templates or added_recipes:
        prompts.cache.clear()
        logger.info(f"Seeded {added_templates} prompt templates and {added_recipes} recipes")
    return {"templates": added_templates, "recipes": added_recipes}
