#region Imports
import os
from pathlib import Path
#endregion


#region Constants
APP_DIR_ENV_VAR = "LUNASYNC_HOME"
DEFAULT_APP_DIR = ".lunasync"
DATABASE_FILE = "library.db"
#endregion


#region Paths

def get_app_data_dir() -> Path:
    """
    Get the directory holding config, token fallback and local library.

    Uses $LUNASYNC_HOME when set, otherwise ~/.lunasync.

    Returns:
        Path to the application data directory (not created)
    """
    override = os.getenv(APP_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / DEFAULT_APP_DIR


def get_database_path() -> Path:
    """Get the path to the local library database."""
    return get_app_data_dir() / DATABASE_FILE

#endregion
