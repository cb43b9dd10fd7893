import os
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/logs")


def _default_log_dir():
    if _is_container_runtime():
        return Path("/logs")
    return PROJECT_ROOT / "data" / "logs"


LOG_DIR = Path(os.environ.get("FETCHR_LOG_DIR", _default_log_dir())).resolve()
LOG_FILENAME = "fetchr.log"


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def log_file_path(log_dir=None):
    return os.path.join(str(log_dir or LOG_DIR), LOG_FILENAME)
