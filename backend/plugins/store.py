"""Configuration store — plugin instances and dashboard items.

Persisted as one JSON document. The instance and monitor-item lists are
mutated by the runtime (labels) and read by display code, so anything that
iterates ``monitor_items`` must hold ``lock``.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import List, Optional

from core.exceptions import ValidationError
from plugins.models import MonitorItem, PersistedConfig, PluginInstance

logger = logging.getLogger(__name__)


class ConfigStore:
    """Mutable plugin configuration with load/save semantics.

    Args:
        path: JSON file to persist to. ``None`` keeps everything in memory.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self.instances: List[PluginInstance] = []
        self.monitor_items: List[MonitorItem] = []
        self.lock = threading.RLock()

    def load(self) -> "ConfigStore":
        """Replace in-memory state with the persisted document (if any)."""
        if self.path is None or not self.path.exists():
            return self

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            config = PersistedConfig.model_validate(data)
        except Exception as e:
            raise ValidationError(f"Invalid configuration file {self.path}: {e}")

        with self.lock:
            self.instances = config.plugin_instances
            self.monitor_items = config.monitor_items
        logger.info(
            "Configuration loaded: %d instance(s), %d dashboard item(s)",
            len(self.instances),
            len(self.monitor_items),
        )
        return self

    def save(self) -> None:
        """Write the current state atomically (temp file + rename)."""
        if self.path is None:
            return

        with self.lock:
            document = PersistedConfig(
                plugin_instances=list(self.instances),
                monitor_items=list(self.monitor_items),
            ).model_dump(mode="json")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.debug("Configuration saved to %s", self.path)

    def get_instance(self, instance_id: str) -> Optional[PluginInstance]:
        with self.lock:
            return next((i for i in self.instances if i.id == instance_id), None)

    def enabled_instances(self) -> List[PluginInstance]:
        with self.lock:
            return [i for i in self.instances if i.enabled]

    def get_monitor_item(self, key: str) -> Optional[MonitorItem]:
        with self.lock:
            return next((m for m in self.monitor_items if m.key == key), None)
