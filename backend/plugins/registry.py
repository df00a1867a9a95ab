"""In-memory value registry.

The shared key/value space plugins publish into and display code reads
from. Writers are plugin target tasks; readers may live on other threads.
"""

import threading
from typing import Dict, Optional


class ValueRegistry:
    """Thread-safe string registry."""

    def __init__(self):
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_value(self, key: str) -> str:
        """Current value, or "" when the key was never set."""
        with self._lock:
            return self._values.get(key, "")

    def inject_value(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def remove(self, prefix: str) -> int:
        """Remove ``prefix`` itself and every key under ``prefix + '.'``."""
        with self._lock:
            keys = [k for k in self._values if k == prefix or k.startswith(prefix + ".")]
            for k in keys:
                del self._values[k]
            return len(keys)

    def snapshot(self, prefix: Optional[str] = None) -> Dict[str, str]:
        with self._lock:
            if not prefix:
                return dict(self._values)
            return {k: v for k, v in self._values.items() if k.startswith(prefix)}
