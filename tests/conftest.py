import os
import tempfile

# Settings and the log file are set up at import time, keep them away from
# the home directory of whoever runs the tests.
_TEST_HOME = tempfile.mkdtemp(prefix="gamesync-tests-")
for _env_name, _dir_name in (
    ("XDG_CONFIG_HOME", "config"),
    ("XDG_DATA_HOME", "data"),
    ("XDG_CACHE_HOME", "cache"),
):
    os.environ[_env_name] = os.path.join(_TEST_HOME, _dir_name)
