"""Read-only view of the agent tooling directory.

Layout under the tooling root (``~/.workbench-agent/agent`` by default):

    skills/<skill-dir>/manifest.json   {"id", "name", "description", "version", "enabled"}
    mcp/servers.json                   {"servers": [{"name", "command", "args", "enabled"}, ...]}

Editing this registry is the workbench UI's job; the agent only reports what
is enabled.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class SkillManifest:
    id: str
    name: str
    description: str = ""
    version: str = "0.1.0"
    enabled: bool = True
    path: str = ""


@dataclass
class MCPServerEntry:
    name: str
    command: str
    args: list[str] = field(default_factory=list)
    enabled: bool = True


@dataclass
class Tooling:
    skills: list[SkillManifest] = field(default_factory=list)
    mcp_servers: list[MCPServerEntry] = field(default_factory=list)

    def enabled_skill_ids(self) -> list[str]:
        return [s.id for s in self.skills if s.enabled]

    def enabled_server_names(self) -> list[str]:
        return [s.name for s in self.mcp_servers if s.enabled]


def _read_manifest(skill_dir: Path) -> SkillManifest | None:
    manifest = skill_dir / "manifest.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Skipping skill {skill_dir.name}: {e}")
        return None
    if not isinstance(data, dict) or not isinstance(data.get("id"), str) or not data["id"]:
        logger.warning(f"Skipping skill {skill_dir.name}: manifest has no id")
        return None
    enabled = data.get("enabled")
    return SkillManifest(
        id=data["id"],
        name=data.get("name") if isinstance(data.get("name"), str) else data["id"],
        description=data.get("description") if isinstance(data.get("description"), str) else "",
        version=data.get("version") if isinstance(data.get("version"), str) else "0.1.0",
        enabled=enabled if isinstance(enabled, bool) else True,
        path=str(skill_dir),
    )


def load_skills(skills_dir: Path) -> list[SkillManifest]:
    """Every skill directory with a readable manifest, sorted by id."""
    if not skills_dir.is_dir():
        return []
    by_id: dict[str, SkillManifest] = {}
    for entry in sorted(skills_dir.iterdir()):
        if entry.is_dir():
            skill = _read_manifest(entry)
            if skill is not None:
                by_id[skill.id] = skill
    return sorted(by_id.values(), key=lambda s: s.id)


def load_mcp_servers(config_file: Path) -> list[MCPServerEntry]:
    """Servers from ``servers.json``, as a list or a name-keyed mapping."""
    if not config_file.exists():
        return []
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load MCP config {config_file}: {e}")
        return []

    raw = data.get("servers", []) if isinstance(data, dict) else []
    if isinstance(raw, dict):
        raw = [{"name": name, **cfg} for name, cfg in raw.items() if isinstance(cfg, dict)]

    by_name: dict[str, MCPServerEntry] = {}
    for cfg in raw if isinstance(raw, list) else []:
        if not isinstance(cfg, dict):
            continue
        name, command = cfg.get("name"), cfg.get("command")
        if not isinstance(name, str) or not name or not isinstance(command, str):
            continue
        args = cfg.get("args")
        enabled = cfg.get("enabled")
        by_name[name.lower()] = MCPServerEntry(
            name=name,
            command=command,
            args=[a for a in args if isinstance(a, str)] if isinstance(args, list) else [],
            enabled=enabled if isinstance(enabled, bool) else True,
        )
    return sorted(by_name.values(), key=lambda s: s.name)


def load_tooling(root: Path) -> Tooling:
    return Tooling(
        skills=load_skills(root / "skills"),
        mcp_servers=load_mcp_servers(root / "mcp" / "servers.json"),
    )
