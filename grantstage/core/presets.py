"""
Privilege presets - named, reusable grant sets kept per connection.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .catalog import CATALOG, PermissionCatalog
from .schema import GrantedPermission
from ..util.logging import logger

PRESET_EXPORT_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PrivilegePreset:
    id: str
    name: str
    grants: List[GrantedPermission] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "grants": [g.to_dict() for g in self.grants],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PrivilegePreset':
        name = (data.get("name") or "").strip()
        if not name:
            raise ValueError("Preset entry has no name")
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            name=name,
            grants=[GrantedPermission.from_dict(g) for g in data.get("grants", [])],
            created_at=data.get("createdAt") or _now(),
            updated_at=data.get("updatedAt") or _now(),
        )


class PresetStore:
    """JSON-file backed preset storage keyed by connection id."""

    def __init__(self, path: str = None):
        self.path = Path(path or config.PRESETS_PATH)
        self._presets: Dict[str, List[PrivilegePreset]] = self._load()

    def _load(self) -> Dict[str, List[PrivilegePreset]]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return {
            connection_id: [PrivilegePreset.from_dict(p) for p in presets]
            for connection_id, presets in raw.get("presetsByConnection", {}).items()
        }

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "presetsByConnection": {
                connection_id: [p.to_dict() for p in presets]
                for connection_id, presets in self._presets.items()
            }
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        tmp_path.replace(self.path)

    def list(self, connection_id: str) -> List[PrivilegePreset]:
        return list(self._presets.get(connection_id, []))

    def get(self, connection_id: str, preset_id: str) -> Optional[PrivilegePreset]:
        for preset in self._presets.get(connection_id, []):
            if preset.id == preset_id:
                return preset
        return None

    def add(self, connection_id: str, name: str, grants: List[GrantedPermission]) -> PrivilegePreset:
        now = _now()
        preset = PrivilegePreset(id=str(uuid.uuid4()), name=name, grants=list(grants),
                                 created_at=now, updated_at=now)
        self._presets.setdefault(connection_id, []).append(preset)
        self._save()
        logger.log_operation("preset.add", "success", {"connection": connection_id, "name": name})
        return preset

    def update(self, connection_id: str, preset_id: str, grants: List[GrantedPermission]) -> bool:
        preset = self.get(connection_id, preset_id)
        if preset is None:
            return False
        preset.grants = list(grants)
        preset.updated_at = _now()
        self._save()
        return True

    def delete(self, connection_id: str, preset_id: str) -> bool:
        presets = self._presets.get(connection_id, [])
        remaining = [p for p in presets if p.id != preset_id]
        if len(remaining) == len(presets):
            return False
        self._presets[connection_id] = remaining
        self._save()
        return True

    def export(self, connection_id: str) -> Dict:
        return {
            "version": PRESET_EXPORT_VERSION,
            "exportedAt": _now(),
            "presets": [p.to_dict() for p in self.list(connection_id)],
        }

    def import_presets(self, connection_id: str, data: Dict, catalog: PermissionCatalog = CATALOG) -> int:
        """Merge presets from an export document; names already present (case-insensitive) are skipped.

        Every entry is validated before any is merged.
        """
        if data.get("version") != PRESET_EXPORT_VERSION:
            raise ValueError(f"Unsupported preset export version: {data.get('version')}")
        incoming = []
        for raw in data.get("presets") or []:
            if not isinstance(raw, dict):
                raise ValueError("Preset entries must be objects")
            preset = PrivilegePreset.from_dict(raw)
            for grant in preset.grants:
                catalog.resolve_scope(grant.permission_id, grant.scope)
            incoming.append(preset)

        existing = self._presets.setdefault(connection_id, [])
        names = {p.name.lower() for p in existing}
        added = 0
        for preset in incoming:
            if preset.name.lower() in names:
                continue
            names.add(preset.name.lower())
            existing.append(preset)
            added += 1
        self._save()
        logger.log_operation("preset.import", "success", {"connection": connection_id, "added": added})
        return added
