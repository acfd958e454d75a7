"""FastAPI API endpoints under /api.

Endpoint groups: settings, characters, factions, locations, dataset
(import/export/merge/conflicts), discord (config, sync, messages, name
resolution, aliases, user mappings).
"""

from fastapi import APIRouter

from .characters import router as characters_router
from .dataset import router as dataset_router
from .discord import router as discord_router
from .factions import router as factions_router
from .locations import router as locations_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(characters_router)
router.include_router(factions_router)
router.include_router(locations_router)
router.include_router(dataset_router)
router.include_router(discord_router)
