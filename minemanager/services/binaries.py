# minemanager/services/binaries.py
"""
Server Binary Provider

Materializes runnable server jars for (engine type, version):
- Returns a cached jar immediately when one exists
- Otherwise resolves the engine's download URL and downloads it
- At most one acquisition per (type, version) in flight; a concurrent
  request for the same key is rejected, not queued
"""

import logging
import re
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from minemanager.services.errors import AlreadyBuilding, BinaryUnavailable
from minemanager.services.models import ServerType

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]

# API Endpoints
PAPERMC_API_V3 = "https://fill.papermc.io/v3"
PURPUR_API = "https://api.purpurmc.org/v2/purpur"
PUFFERFISH_CI = "https://ci.pufferfish.host/job"
MOHIST_API = "https://api.mohistmc.com/project/mohist"
ARCLIGHT_RELEASES = "https://api.github.com/repos/IzzelAliz/Arclight/releases"

# HTTP client settings
TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 300.0
USER_AGENT = "MineManager-BinaryProvider/1.0"

# Anything smaller is an error page, not a jar
MIN_JAR_BYTES = 1000

_JAR_NAME_RE = re.compile(r"^(paper|purpur|pufferfish|mohist|arclight)-(.+)\.jar$")

# Versions offered to the UI, with the Java major version each needs
VERSION_CATALOG: Dict[str, List[dict]] = {
    "paper": [
        {"version": "1.21.4", "java": "21"}, {"version": "1.21.3", "java": "21"},
        {"version": "1.21.1", "java": "21"}, {"version": "1.20.6", "java": "21"},
        {"version": "1.20.4", "java": "17"}, {"version": "1.20.1", "java": "17"},
    ],
    "purpur": [
        {"version": "1.21.4", "java": "21"}, {"version": "1.21.3", "java": "21"},
        {"version": "1.21.1", "java": "21"}, {"version": "1.20.6", "java": "21"},
        {"version": "1.20.4", "java": "17"}, {"version": "1.20.1", "java": "17"},
    ],
    "pufferfish": [
        {"version": "1.21", "java": "21"}, {"version": "1.20", "java": "17"},
    ],
    "mohist": [
        {"version": "1.20.2", "java": "17"}, {"version": "1.20.1", "java": "17"},
        {"version": "1.19.4", "java": "17"}, {"version": "1.19.2", "java": "17"},
        {"version": "1.18.2", "java": "17"}, {"version": "1.16.5", "java": "8"},
        {"version": "1.12.2", "java": "8"},
    ],
    "arclight": [
        {"version": "1.21.1", "java": "21"}, {"version": "1.20.6", "java": "21"},
        {"version": "1.20.4", "java": "17"},
    ],
}


def _build_key(server_type: ServerType, version: str) -> str:
    return f"{server_type.value}-{version}"


class BinaryProvider:
    """Downloads and caches server jars under ``jars_dir``."""

    def __init__(self, jars_dir: Path):
        self.jars_dir = jars_dir
        self._building: Dict[str, dict] = {}

    def jar_path(self, server_type: ServerType, version: str) -> Path:
        return self.jars_dir / f"{_build_key(server_type, version)}.jar"

    @staticmethod
    def _is_valid_jar(path: Path) -> bool:
        return path.exists() and path.stat().st_size > MIN_JAR_BYTES

    def available_binaries(self) -> Dict[str, List[str]]:
        jars: Dict[str, List[str]] = {t.value: [] for t in ServerType}
        if not self.jars_dir.exists():
            return jars
        for path in sorted(self.jars_dir.iterdir()):
            match = _JAR_NAME_RE.match(path.name)
            if match and self._is_valid_jar(path):
                jars[match.group(1)].append(match.group(2))
        return jars

    def current_build_status(self, server_type: ServerType, version: str) -> Optional[dict]:
        status = self._building.get(_build_key(server_type, version))
        return dict(status) if status else None

    def all_build_status(self) -> Dict[str, dict]:
        return {key: dict(status) for key, status in self._building.items()}

    async def ensure_binary(
        self,
        server_type: ServerType,
        version: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        jar_path = self.jar_path(server_type, version)
        if self._is_valid_jar(jar_path):
            return jar_path

        key = _build_key(server_type, version)
        if key in self._building:
            raise AlreadyBuilding(f"Already building {server_type.value} {version}")

        self._building[key] = {"progress": 0, "message": "Starting..."}

        async def update_progress(progress: int, message: str):
            self._building[key] = {"progress": progress, "message": message}
            if on_progress is not None:
                try:
                    await on_progress(progress, message)
                except Exception as e:
                    logger.debug("Progress callback failed for %s: %s", key, e)

        try:
            await update_progress(10, "Resolving download...")
            url = await self._resolve_download_url(server_type, version)
            await update_progress(50, "Downloading...")
            await self._download(url, jar_path)
            await update_progress(100, "Done")
        except (httpx.HTTPError, OSError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.error(f"Failed to acquire {key}: {e}")
            raise BinaryUnavailable(f"Could not acquire {server_type.value} {version}: {e}") from e
        finally:
            self._building.pop(key, None)

        logger.info("Acquired %s at %s", key, jar_path)
        return jar_path

    # =========================================================================
    # Download URL resolution (one strategy per engine)
    # =========================================================================

    async def _resolve_download_url(self, server_type: ServerType, version: str) -> str:
        async with httpx.AsyncClient(timeout=TIMEOUT, follow_redirects=True) as client:
            headers = {"User-Agent": USER_AGENT}

            if server_type == ServerType.PAPER:
                # v3 API: latest build is FIRST in the array
                response = await client.get(
                    f"{PAPERMC_API_V3}/projects/paper/versions/{version}/builds", headers=headers
                )
                response.raise_for_status()
                builds = response.json()
                if not builds:
                    raise ValueError(f"No builds found for Paper {version}")
                download = builds[0].get("downloads", {}).get("server:default", {})
                url = download.get("url")
                if not url:
                    raise ValueError(f"Paper build {builds[0].get('id')} has no download URL")
                return url

            if server_type == ServerType.PURPUR:
                response = await client.get(f"{PURPUR_API}/{version}", headers=headers)
                response.raise_for_status()
                latest = response.json()["builds"]["latest"]
                return f"{PURPUR_API}/{version}/{latest}/download"

            if server_type == ServerType.PUFFERFISH:
                # 1.21.1 -> job Pufferfish-1.21
                major_minor = ".".join(version.split(".")[:2])
                job_url = f"{PUFFERFISH_CI}/Pufferfish-{major_minor}/lastSuccessfulBuild"
                response = await client.get(f"{job_url}/api/json", headers=headers)
                response.raise_for_status()
                artifacts = response.json().get("artifacts") or []
                if not artifacts:
                    raise ValueError("Pufferfish artifact not found")
                return f"{job_url}/artifact/{artifacts[0]['relativePath']}"

            if server_type == ServerType.MOHIST:
                response = await client.get(f"{MOHIST_API}/{version}/builds", headers=headers)
                response.raise_for_status()
                builds = response.json()
                if not builds or not builds[0].get("id"):
                    raise ValueError("No Mohist builds available")
                return f"{MOHIST_API}/{version}/builds/{builds[0]['id']}/download"

            if server_type == ServerType.ARCLIGHT:
                response = await client.get(ARCLIGHT_RELEASES, headers=headers)
                response.raise_for_status()
                release = next((r for r in response.json() if version in r.get("tag_name", "")), None)
                if release is None:
                    raise ValueError(f"Arclight {version} not found")
                asset = next(
                    (a for a in release.get("assets", [])
                     if a["name"].endswith(".jar") and "forge" in a["name"]),
                    None,
                )
                if asset is None:
                    raise ValueError("Arclight JAR not found")
                return asset["browser_download_url"]

        raise ValueError(f"Unsupported server type: {server_type}")

    async def _download(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.with_name(dest.name + ".part")
        try:
            async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
                async with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                    response.raise_for_status()
                    with open(tmp_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)

            size = tmp_path.stat().st_size
            if size <= MIN_JAR_BYTES:
                raise ValueError(f"File too small ({size} bytes)")
            tmp_path.replace(dest)
            logger.info(f"Saved {size / 1024 / 1024:.1f} MB to {dest.name}")
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
