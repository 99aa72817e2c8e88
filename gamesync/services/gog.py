"""GOG cloud saves before launch and after exit"""

from gettext import gettext as _
from typing import List, Optional, Tuple

from gamesync.container import Container, GameSource
from gamesync.credentials import GOG_SCOPE
from gamesync.services.base import SyncEngineCloudSavePlatform
from gamesync.services.gog_cloud import (
    GOGCloudStorageClient,
    RemoteConfigCache,
    get_default_location,
    get_game_client_credentials,
    get_game_scoped_token,
    read_info_file,
    resolve_save_path,
)
from gamesync.util.log import logger


class GOGCloudSavePlatform(SyncEngineCloudSavePlatform):
    """Syncs GOG games against GOG's cloud storage"""

    id = "gog"
    name = _("GOG")
    source = GameSource.GOG
    credential_scope = GOG_SCOPE

    def __init__(self, engine, credentials, remote_config: Optional[RemoteConfigCache] = None, **kwargs) -> None:
        super().__init__(engine, credentials, **kwargs)
        self.remote_config = remote_config or RemoteConfigCache()

    def get_client_credentials(self, container: Container) -> Tuple[str, str]:
        """Return the game's clientId and clientSecret. The clientId of the
        installed build's info file wins over the one of the manifest."""
        info_client_id = read_info_file(container.install_path, container.game_id).get("clientId")
        client_id, client_secret = get_game_client_credentials(container.game_id, container.platform)
        if info_client_id and info_client_id != client_id:
            logger.warning("Installed build of %s uses clientId %s, not %s", container, info_client_id, client_id)
            client_id = info_client_id
        return client_id, client_secret

    def get_cloud_storage(self, container: Container) -> Tuple[GOGCloudStorageClient, List[Tuple[str, str]]]:
        account = self.credentials.get_credentials(self.credential_scope).unwrap()
        client_id, client_secret = self.get_client_credentials(container)
        game_token = get_game_scoped_token(account.refresh_token, client_id, client_secret)
        storage_client = GOGCloudStorageClient(str(game_token["user_id"]), client_id, game_token["access_token"])

        locations = self.remote_config.get_locations(client_id, container.platform)
        if not locations:
            logger.info("No save locations declared for %s, using the Galaxy default", container)
            locations = [get_default_location(client_id)]

        resolved = []
        for location in locations:
            save_path = resolve_save_path(
                location,
                container.install_path,
                container.is_native,
                container.wine_prefix,
                container.wine_user,
            )
            if save_path:
                logger.info("Resolved location '%s' to path: %s", location.name, save_path)
                resolved.append((location.name, save_path))
        return storage_client, resolved
