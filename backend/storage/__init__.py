"""File-backed storage for the HTTP app.

Data layout:
  data/
    store/
      gameCharacterManager.json            characters envelope
      gameCharacterManager_factions.json   factions envelope
      gameCharacterManager_locations.json  locations envelope
      gameCharacterManager_events.json     events envelope
      gameCharacterManager_discord_*.json  Discord config, mappings, messages, aliases
    config.json                            App settings (thresholds, Discord sync, export)

Every collection is read and written whole through one shared
``character_manager.storage.Repository``; see ``repository()``.

Config: get_config() returns defaults merged with stored values.
update_config() applies partial updates; unknown keys are ignored.
"""

from .core import (  # noqa: F401
    data_dir,
    init_storage,
    repository,
    store_dir,
)

from .config import (  # noqa: F401
    get_config,
    match_thresholds,
    update_config,
)
