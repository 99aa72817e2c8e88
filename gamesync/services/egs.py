"""Epic Games Store cloud saves before launch and after exit"""

from gettext import gettext as _
from typing import List, Tuple

from gamesync.container import Container, GameSource
from gamesync.credentials import EGS_SCOPE
from gamesync.exceptions import AuthenticationError, MisconfigurationError
from gamesync.services.base import SyncEngineCloudSavePlatform
from gamesync.services.egs_cloud import EGS_LOCATION_NAME, EGSCloudStorageClient, resolve_save_path


class EGSCloudSavePlatform(SyncEngineCloudSavePlatform):
    """Syncs Epic games against Epic's data storage.

    The save folder comes from the ``cloud_save_folder`` option of the game
    config, which holds the game's CloudSaveFolder attribute.
    """

    id = "egs"
    name = _("Epic Games Store")
    source = GameSource.EPIC
    credential_scope = EGS_SCOPE

    def get_cloud_storage(self, container: Container) -> Tuple[EGSCloudStorageClient, List[Tuple[str, str]]]:
        account = self.credentials.get_credentials(self.credential_scope).unwrap()
        if account.is_expired:
            raise AuthenticationError("The Epic token has expired, log in to the Epic Games Store again")
        if not account.user_id:
            raise MisconfigurationError("The Epic token has no account id")
        storage_client = EGSCloudStorageClient(account.user_id, container.game_id, account.access_token)
        save_folder = container.game_config.get("cloud_save_folder")
        if not save_folder:
            return storage_client, []
        save_path = resolve_save_path(
            save_folder,
            container.install_path,
            account.user_id,
            container.wine_prefix,
            container.wine_user,
        )
        if not save_path:
            return storage_client, []
        return storage_client, [(EGS_LOCATION_NAME, save_path)]
