"""Game containers and the service they come from.

A container is the per-game environment a title runs in. Its id encodes the
service the game was bought on, e.g. ``STEAM_220``, ``GOG_1207658924`` or
``EPIC_Fortnite``. Ids made only of digits predate the prefixes and are
Steam games.

Each container has a YAML file in the games config directory:

    game:
      name: Some Game
      install_path: /home/user/Games/some-game
      is_native: false
    wine:
      prefix: /home/user/Games/some-game/prefix
      user: steamuser
"""

import os
from enum import Enum
from typing import Optional, Tuple

from gamesync import settings
from gamesync.exceptions import MisconfigurationError
from gamesync.util.log import logger
from gamesync.util.system import create_folder
from gamesync.util.yaml import read_yaml_from_file, write_yaml_to_file


class GameSource(Enum):
    STEAM = "STEAM"
    CUSTOM_GAME = "CUSTOM_GAME"
    GOG = "GOG"
    EPIC = "EPIC"
    AMAZON = "AMAZON"


def parse_container_id(container_id: str) -> Tuple[GameSource, str]:
    """Split a container id into its game source and the service's game id"""
    container_id = str(container_id)
    if container_id.isdigit():
        return GameSource.STEAM, container_id
    # Longest prefixes first so that CUSTOM_GAME is not read as something else
    for source in sorted(GameSource, key=lambda s: len(s.value), reverse=True):
        prefix = source.value + "_"
        if container_id.startswith(prefix) and len(container_id) > len(prefix):
            return source, container_id[len(prefix):]
    raise MisconfigurationError("Invalid container id: %s" % container_id)


class Container:
    """A game container backed by its YAML configuration"""

    def __init__(self, container_id: str, config: Optional[dict] = None) -> None:
        self.id = str(container_id)
        self.source, self.game_id = parse_container_id(self.id)
        self.config = config if config is not None else read_yaml_from_file(self.config_path)

    def __repr__(self) -> str:
        return "Container(id=%s, name=%s)" % (self.id, self.name)

    @property
    def config_path(self) -> str:
        return get_container_config_path(self.id)

    @property
    def game_config(self) -> dict:
        return self.config.get("game") or {}

    @property
    def wine_config(self) -> dict:
        return self.config.get("wine") or {}

    @property
    def name(self) -> str:
        return self.game_config.get("name") or self.id

    @property
    def install_path(self) -> str:
        return self.game_config.get("install_path") or os.path.join(settings.GAMES_DIR, self.id)

    @property
    def is_native(self) -> bool:
        return bool(self.game_config.get("is_native"))

    @property
    def platform(self) -> str:
        """Platform name as the store APIs expect it, lower case"""
        return self.game_config.get("platform") or ("linux" if self.is_native else "windows")

    @property
    def wine_prefix(self) -> Optional[str]:
        return self.wine_config.get("prefix")

    @property
    def wine_user(self) -> Optional[str]:
        return self.wine_config.get("user")

    def save(self) -> None:
        create_folder(settings.GAME_CONFIG_DIR)
        logger.debug("Saving %s config to %s", self, self.config_path)
        write_yaml_to_file(self.config, self.config_path)


def get_container_config_path(container_id: str) -> str:
    return os.path.join(settings.GAME_CONFIG_DIR, "%s.yml" % container_id)


def load_container(container_id: str) -> Container:
    """Return the container for an id. Raises MisconfigurationError if the id
    is malformed."""
    return Container(container_id)
