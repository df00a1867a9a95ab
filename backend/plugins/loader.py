"""Template document loader.

Reads every ``*.json`` file of the plugin directory into PluginTemplate
objects. A malformed document is skipped and logged; it never stops the
others from loading.
"""

import json
import logging
from pathlib import Path
from typing import List, Union

from core.constants import TEMPLATE_GLOB
from core.exceptions import TemplateLoadError
from plugins.models import PluginTemplate

logger = logging.getLogger(__name__)


def load_template_file(path: Union[str, Path]) -> PluginTemplate:
    """Parse one template document.

    Raises:
        TemplateLoadError: If the file cannot be read, is not valid JSON,
            does not match the template schema, or has no id
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
        template = PluginTemplate.model_validate(data)
    except Exception as e:
        raise TemplateLoadError(str(path), str(e))

    if not template.id.strip():
        raise TemplateLoadError(str(path), "missing template id")
    return template


def load_templates(directory: Union[str, Path]) -> List[PluginTemplate]:
    """Load all templates in ``directory``, creating it if missing."""
    directory = Path(directory)
    if not directory.exists():
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cannot create plugin directory %s: %s", directory, e)
        return []

    templates: List[PluginTemplate] = []
    seen: set[str] = set()
    for file in sorted(directory.glob(TEMPLATE_GLOB)):
        try:
            template = load_template_file(file)
        except TemplateLoadError as e:
            logger.warning("Skipping template %s: %s", e.path, e.reason)
            continue
        if template.id in seen:
            logger.warning("Skipping template %s: duplicate id '%s'", file, template.id)
            continue
        seen.add(template.id)
        templates.append(template)

    logger.info("Loaded %d plugin template(s) from %s", len(templates), directory)
    return templates
