import logging
import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILENAME = "contextsift.toml"


def get_config_dir() -> Path:
    return Path(user_config_dir("contextsift"))


def get_data_dir() -> Path:
    # used in testing, so must take precedence
    if "XDG_DATA_HOME" in os.environ:
        return Path(os.environ["XDG_DATA_HOME"]) / "contextsift"
    return Path(user_data_dir("contextsift"))


def get_cache_path() -> Path:
    """Get the path of the SQLite database holding embeddings and saved searches."""
    if "CONTEXTSIFT_CACHE_PATH" in os.environ:
        path = Path(os.environ["CONTEXTSIFT_CACHE_PATH"])
    else:
        path = get_data_dir() / "cache.sqlite3"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_project_dir(start: Path | None = None) -> Path | None:
    """
    Walks up the directory tree from the working dir to find the project root,
    which is a directory containing a `contextsift.toml` file.
    Or if none exists, the first parent directory with a git repo.
    """
    path = (start or Path.cwd()).resolve()
    while path != path.parent:
        if (path / PROJECT_CONFIG_FILENAME).exists():
            return path
        path = path.parent
    return get_project_git_dir(start)


def get_project_git_dir(start: Path | None = None) -> Path | None:
    path = (start or Path.cwd()).resolve()
    while path != path.parent:
        if (path / ".git").exists():
            return path
        path = path.parent
    return None
