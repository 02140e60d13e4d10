"""Filesystem locations for Palate's local state."""
import os

DB_FILENAME = "palate.db"
LOGS_DIR = "logs"

SKIP_DIRS = frozenset({".palate", "@eaDir", ".thumbnails"})

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".heic", ".tif", ".tiff"})
VIDEO_EXTENSIONS = frozenset({".mov", ".mp4", ".m4v"})


def get_data_dir(data_dir: str) -> str:
    path = os.path.expanduser(data_dir)
    os.makedirs(path, exist_ok=True)
    return path


def get_db_path(data_dir: str) -> str:
    return os.path.join(get_data_dir(data_dir), DB_FILENAME)


def get_log_dir(data_dir: str) -> str:
    path = os.path.join(get_data_dir(data_dir), LOGS_DIR)
    os.makedirs(path, exist_ok=True)
    return path
