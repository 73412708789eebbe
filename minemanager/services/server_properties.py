# minemanager/services/server_properties.py
"""server.properties reading/writing and the template for new instances."""

from pathlib import Path
from typing import Dict

# Written once when an instance is created; server-port is filled per instance
DEFAULT_PROPERTIES: Dict[str, str] = {
    "online-mode": "false",
    "gamemode": "survival",
    "difficulty": "easy",
    "max-players": "20",
    "motd": "A Minecraft Server",
    "level-name": "world",
    "level-type": "minecraft\\:normal",
    "spawn-protection": "16",
    "allow-nether": "true",
    "allow-flight": "false",
    "view-distance": "10",
    "simulation-distance": "10",
    "enable-command-block": "false",
    "hardcore": "false",
    "pvp": "true",
    "generate-structures": "true",
    "spawn-monsters": "true",
    "spawn-animals": "true",
    "spawn-npcs": "true",
    "force-gamemode": "false",
    "white-list": "false",
    "broadcast-console-to-ops": "true",
    "op-permission-level": "4",
    "function-permission-level": "2",
    "resource-pack": "",
    "require-resource-pack": "false",
    "enable-jmx-monitoring": "false",
    "sync-chunk-writes": "true",
    "enable-status": "true",
    "hide-online-players": "false",
    "max-world-size": "29999984",
    "network-compression-threshold": "256",
    "max-tick-time": "60000",
    "use-native-transport": "true",
    "enable-rcon": "false",
    "rcon.port": "25575",
    "rcon.password": "",
    "enable-query": "false",
    "generator-settings": "{}",
    "level-seed": "",
    "enforce-whitelist": "false",
    "rate-limit": "0",
}


def load_server_properties(path: Path) -> Dict[str, str]:
    """Load a server.properties file into a dict (comments and blanks skipped)"""
    props = {}
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, value = line.split("=", 1)
                props[key.strip()] = value.strip()
    return props


def write_server_properties(path: Path, props: Dict[str, str]) -> None:
    """Replace the file with exactly ``props``."""
    lines = ["#Minecraft server properties"]
    lines.extend(f"{key}={value}" for key, value in props.items())
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def initial_properties(port: int) -> Dict[str, str]:
    props = {"server-port": str(port)}
    props.update(DEFAULT_PROPERTIES)
    props["query.port"] = str(port)
    return props
