"""Service wiring — one object holding every collaborator the HTTP layer and CLI use."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storylab.adaptors.registry import AdaptorRegistry, create_default_registry
from storylab.cache import PromptCache
from storylab.generation import AnimationGenerator, PlayerImageGenerator, ThemeGenerator
from storylab.projects import ProjectService
from storylab.prompts import PromptTemplateStore
from storylab.recipes.manager import RecipeManager
from storylab.recipes.orchestrator import RecipeOrchestrator
from storylab.resolver import AdaptorResolver
from storylab.seeds import seed_defaults
from storylab.store import DocumentStore, InMemoryDocumentStore
from storylab.uploads import BlobUploader, LocalBlobUploader

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: DocumentStore
    cache: PromptCache
    prompts: PromptTemplateStore
    registry: AdaptorRegistry
    resolver: AdaptorResolver
    recipes: RecipeManager
    orchestrator: RecipeOrchestrator
    projects: ProjectService
    uploader: BlobUploader
    themes: ThemeGenerator
    images: PlayerImageGenerator
    animations: AnimationGenerator

    @classmethod
    def create(
        cls,
        db: DocumentStore | None = None,
        registry: AdaptorRegistry | None = None,
        uploader: BlobUploader | None = None,
        check_health: bool | None = None,
        retry_attempts: int | None = None,
        animation_delay: float | None = None,
        seed: bool = True,
    ) -> Services:
        db = db or InMemoryDocumentStore()
        cache = PromptCache()
        prompts = PromptTemplateStore(db, cache)
        registry = registry or create_default_registry()
        resolver = AdaptorResolver(registry, prompts, db, check_health=check_health)
        recipes = RecipeManager(db)
        uploader = uploader or LocalBlobUploader()

        if seed:
            seed_defaults(prompts, recipes)

        generator_args = (prompts, resolver, db, uploader)
        services = cls(
            db=db,
            cache=cache,
            prompts=prompts,
            registry=registry,
            resolver=resolver,
            recipes=recipes,
            orchestrator=RecipeOrchestrator(recipes, resolver, retry_attempts),
            projects=ProjectService(db),
            uploader=uploader,
            themes=ThemeGenerator(*generator_args),
            images=PlayerImageGenerator(*generator_args),
            animations=AnimationGenerator(*generator_args, item_delay=animation_delay),
        )
        logger.info(f"Services ready with adaptors: {', '.join(registry.ids()) or 'none'}")
        return services
