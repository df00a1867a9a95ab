"""Constants and enums for the plugin runtime engine."""

from enum import Enum

# Registry key prefix for dashboard entries: DASH.<instance>[.<target>].<output>
DASH_PREFIX = "DASH."

# Values published into the registry
STATUS_ERROR = "Err"
STATUS_LOADING = "..."
STATUS_UNKNOWN = "?"
STATUS_EMPTY = "[Empty]"

TEMPLATE_GLOB = "*.json"


class ExecutionType(str, Enum):
    """How a template fetches its data."""

    API_JSON = "api_json"
    API_TEXT = "api_text"
    CHAIN = "chain"


class ResponseFormat(str, Enum):
    """Response body formats a step can extract from."""

    JSON = "json"
    JSONP = "jsonp"
    TEXT = "text"


class InputScope(str, Enum):
    """Where an input value lives: on the instance or on each target."""

    GLOBAL = "global"
    TARGET = "target"


class TransformFunction(str, Enum):
    """Functions available in a transform pipeline."""

    REGEX_REPLACE = "regex_replace"
    REGEX_MATCH = "regex_match"
    MAP = "map"
    RESOLVE_TEMPLATE = "resolve_template"
    THRESHOLD_SWITCH = "threshold_switch"


class JobState(str, Enum):
    """Lifecycle of a scheduled instance job."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
