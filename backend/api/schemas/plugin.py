"""Plugin runtime schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OutputSummary(BaseModel):
    """One declared output of a template."""

    key: str = Field(description="Output key (last segment of the dashboard key)")
    label: str = Field(default="", description="Label pattern")
    short_label: str = Field(default="", description="Short label pattern")
    unit: str = Field(default="", description="Display unit")


class TemplateSummary(BaseModel):
    """Loaded template, as listed by the API."""

    id: str = Field(description="Template id")
    name: str = Field(description="Template display name")
    version: str = Field(description="Template version")
    execution_type: str = Field(description="api_json, api_text or chain")
    interval_ms: int = Field(description="Default run interval in milliseconds")
    inputs: List[str] = Field(default=[], description="Declared input keys")
    outputs: List[OutputSummary] = Field(default=[], description="Declared outputs")


class InstanceStatus(BaseModel):
    """Runtime state of one configured instance."""

    id: str = Field(description="Instance id")
    template_id: str = Field(description="Template the instance is bound to")
    enabled: bool = Field(description="Whether the instance is enabled in the configuration")
    running: bool = Field(description="Whether a job is currently scheduled")
    state: Optional[str] = Field(default=None, description="Job state: idle, running or stopped")
    interval_ms: Optional[int] = Field(default=None, description="Effective interval in milliseconds")
    runs: int = Field(default=0, description="Completed runs since the job started")
    last_run_at: Optional[datetime] = Field(default=None, description="End of the last completed run")
    targets: int = Field(default=0, description="Number of configured targets")


class ReconcileResponse(BaseModel):
    """Outcome of a reload."""

    templates: int = Field(description="Templates loaded")
    instances: int = Field(description="Configured instances")
    started: List[str] = Field(default=[], description="Instance ids (re)started")
    stopped: List[str] = Field(default=[], description="Instance ids stopped")


class ValuesResponse(BaseModel):
    """Registry snapshot."""

    count: int = Field(description="Number of values returned")
    values: Dict[str, str] = Field(default={}, description="Registry key -> value")


class LabelResponse(BaseModel):
    """Smart label lookup result."""

    key: str = Field(description="Dashboard key looked up")
    field: str = Field(description="label or short_label")
    label: str = Field(description="Derived label, empty when unknown")
