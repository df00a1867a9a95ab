"""Plugin template and configuration models.

Templates are parsed from one JSON document per plugin and never change
after load. Instances and dashboard items are the persisted, user-editable
half of the configuration.

Template document shape:
{
    "id": "com.example.weather",
    "meta": {"name": "Weather", "version": "1.0.0", "author": "", "description": "", "url": ""},
    "inputs": [
        {"key": "city", "label": "City", "type": "text", "default": "Berlin", "scope": "target"}
    ],
    "execution": {
        "type": "chain",
        "interval": 600000,
        "steps": [
            {
                "id": "geo",
                "url": "https://geo.example.com/?q={{city}}",
                "extract": {"lat": "results[0].lat", "lon": "results[0].lon"},
                "cache_minutes": -1
            },
            {
                "id": "now",
                "url": "https://api.example.com/now?lat={{lat}}&lon={{lon}}",
                "extract": {"temp": "current.temperature"}
            }
        ]
    },
    "outputs": [
        {"key": "temp", "label": "{{city_name ?? city}} Temp", "short_label": "T", "format": "{{temp}}", "unit": "°C"}
    ]
}
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from core.constants import ExecutionType, InputScope, ResponseFormat


class _DocumentModel(BaseModel):
    """Base for template document parts: explicit nulls fall back to defaults."""

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    class Config:
        frozen = True
        populate_by_name = True
        coerce_numbers_to_str = True


class PluginMeta(_DocumentModel):
    name: str = ""
    version: str = "1.0.0"
    author: str = ""
    description: str = ""
    url: str = ""


class PluginInputOption(_DocumentModel):
    label: str = ""
    value: str = ""


class PluginInput(_DocumentModel):
    """One user-configurable input of a template."""

    key: str
    label: str = ""
    type: str = "text"  # text, password, select...
    default: str = ""
    placeholder: str = ""
    options: Optional[List[PluginInputOption]] = None
    scope: InputScope = InputScope.GLOBAL


class PluginTransform(_DocumentModel):
    """One stage of a transform pipeline, applied to a context variable."""

    target_var: str = Field(default="", alias="var")
    source_var: str = Field(default="", alias="source")
    function: str = "regex_replace"
    pattern: str = ""
    to: str = ""
    mapping: Optional[Dict[str, str]] = Field(default=None, alias="map")
    value_map: Optional[Dict[str, str]] = None


class PluginStep(_DocumentModel):
    """One HTTP call of a chain execution."""

    id: str = ""
    url: str = ""
    method: str = "GET"
    body: str = ""
    headers: Optional[Dict[str, str]] = None
    response_encoding: str = "utf-8"
    response_format: ResponseFormat = ResponseFormat.JSON
    extract: Dict[str, str] = Field(default_factory=dict)
    process: Optional[List[PluginTransform]] = None
    cache_minutes: int = 0  # 0 = never cache, negative = forever
    skip_if_set: str = ""


class PluginExecution(_DocumentModel):
    type: ExecutionType = ExecutionType.API_JSON
    method: str = "GET"
    interval: int = 60000  # milliseconds
    url: str = ""
    body: str = ""
    headers: Optional[Dict[str, str]] = None
    extract: Dict[str, str] = Field(default_factory=dict)
    process: Optional[List[PluginTransform]] = None
    steps: Optional[List[PluginStep]] = None


class PluginOutput(_DocumentModel):
    """A published value: registry key suffix plus label and value patterns."""

    key: str
    label: str = ""
    short_label: str = ""
    format: str = ""
    unit: str = ""
    color: str = ""


class PluginDisplay(_DocumentModel):
    label: str = ""
    short_label: str = ""


class PluginTemplate(_DocumentModel):
    """Read-only schema for one plugin kind. Identity is ``id``."""

    id: str
    meta: PluginMeta = Field(default_factory=PluginMeta)
    inputs: List[PluginInput] = Field(default_factory=list)
    execution: PluginExecution = Field(default_factory=PluginExecution)
    outputs: List[PluginOutput] = Field(default_factory=list)
    display: PluginDisplay = Field(default_factory=PluginDisplay)

    def input_defaults(self) -> Dict[str, str]:
        return {i.key: i.default for i in self.inputs}


# ─── Persisted configuration ──────────────────────────────────


class PluginInstance(BaseModel):
    """A user-configured binding of a template to concrete input values."""

    id: str
    template_id: str
    enabled: bool = True
    input_values: Dict[str, str] = Field(default_factory=dict)
    custom_interval: int = 0  # milliseconds, 0 = use the template interval
    targets: List[Dict[str, str]] = Field(default_factory=list)

    class Config:
        coerce_numbers_to_str = True

    def effective_targets(self) -> List[Dict[str, str]]:
        """Configured targets, or one implicit empty target."""
        return self.targets if self.targets else [{}]

    def target_suffix(self, index: int) -> str:
        return f".{index}" if self.targets else ""


class MonitorItem(BaseModel):
    """Dashboard record for one (instance, target, output) value."""

    key: str
    user_label: str = ""  # user override, empty = automatic
    taskbar_label: str = ""  # user override, empty = automatic
    dynamic_label: str = ""
    dynamic_taskbar_label: str = ""
    unit: str = ""
    visible_in_panel: bool = True
    sort_index: int = 0
    taskbar_sort_index: int = 0

    @property
    def display_label(self) -> str:
        return self.user_label or self.dynamic_label

    @property
    def display_short_label(self) -> str:
        return self.taskbar_label or self.dynamic_taskbar_label


class PersistedConfig(BaseModel):
    """On-disk document of the configuration store."""

    plugin_instances: List[PluginInstance] = Field(default_factory=list)
    monitor_items: List[MonitorItem] = Field(default_factory=list)
