import os
from pathlib import Path

from dotenv import load_dotenv

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
PACKAGE_DIR = CORE_DIR.parent
ROOT_DIR = PACKAGE_DIR.parent
ENV_FILE = ROOT_DIR / ".env"

load_dotenv(dotenv_path=ENV_FILE)


def _path_from_env(name: str, default: Path) -> Path:
    raw = os.getenv(name, str(default)).strip()
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = ROOT_DIR / path
    return path


def _float_from_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


DATA_DIR = _path_from_env("MINEMANAGER_DATA_DIR", ROOT_DIR / "servers")
INSTANCES_DIR = DATA_DIR / "instances"
BACKUPS_DIR = DATA_DIR / "backups"
JARS_DIR = DATA_DIR / "jars"
BUNGEECORD_DIR = DATA_DIR / "bungeecord"
SHARED_PLUGINS_DIR = DATA_DIR / "shared-plugins"
DATA_FILE = DATA_DIR / "data.json"

# ==========================================
# Minecraft Process Configuration
# ==========================================

JAVA_PATH = os.getenv("JAVA_PATH", "/usr/bin/java")
DEFAULT_MEMORY_MB = int(os.getenv("DEFAULT_MEMORY_MB", "2048"))
PROXY_MEMORY_MB = int(os.getenv("PROXY_MEMORY_MB", "512"))
DEFAULT_PROXY_PORT = int(os.getenv("DEFAULT_PROXY_PORT", "25565"))
LOG_BUFFER_LINES = int(os.getenv("LOG_BUFFER_LINES", "500"))

# Fixed delays, kept configurable
LOCK_CLEANUP_DELAY_SEC = _float_from_env("LOCK_CLEANUP_DELAY_SEC", 5.0)
PROXY_RESTART_DELAY_SEC = _float_from_env("PROXY_RESTART_DELAY_SEC", 2.0)
TELEMETRY_INTERVAL_SEC = _float_from_env("TELEMETRY_INTERVAL_SEC", 2.0)
BACKUP_SWEEP_INTERVAL_SEC = _float_from_env("BACKUP_SWEEP_INTERVAL_SEC", 60.0)

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
PORT = int(os.getenv("PORT", "3000"))
HOST = os.getenv("HOST", "127.0.0.1")
MANAGER_URL = os.getenv("MANAGER_URL", f"http://localhost:{PORT}")
