"""System utilities"""

import os

from gamesync.util.log import logger


def create_folder(path):
    """Creates a folder specified by path"""
    if not path:
        return
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        os.makedirs(path)
    return path


def path_exists(path: str, check_symlinks: bool = False, exclude_empty: bool = False) -> bool:
    """Wrapper around system.path_exists that doesn't crash with empty values

    Params:
        path (str): File to the file to check
        check_symlinks (bool): If the path is a broken symlink, return False
        exclude_empty (bool): If true, consider 0 bytes files as non existing
    """
    if not path:
        return False
    if os.path.exists(path):
        if exclude_empty:
            try:
                return os.stat(path).st_size > 0
            except FileNotFoundError:
                return False
        return True
    if os.path.islink(path):
        logger.warning("%s is a broken link", path)
        return not check_symlinks
    return False


def write_file_atomically(path: str, content: str) -> None:
    """Write text to path through a temporary file and a rename, so readers
    never see a half written file."""
    temp_path = path + ".tmp"
    try:
        with open(temp_path, "w", encoding="utf-8") as temp_file:
            temp_file.write(content)
        os.replace(temp_path, path)
    finally:
        if os.path.isfile(temp_path):
            os.unlink(temp_path)
