"""Dashboard entries — the labeled, displayable side of plugin outputs.

Every (instance, target, output) triple owns one registry value and one
MonitorItem, keyed ``DASH.<instanceId>[.<targetIndex>].<outputKey>``.
Labels are derived from the template's output patterns and only
overwritten when every placeholder in the pattern can be resolved, so a
half-configured instance never degrades a good label.
"""

from typing import Dict, Mapping, Optional, Set

import structlog

from core.constants import DASH_PREFIX, STATUS_EMPTY, STATUS_ERROR, STATUS_LOADING
from plugins.models import MonitorItem, PluginInstance, PluginOutput, PluginTemplate
from plugins.registry import ValueRegistry
from plugins.resolver import Context, can_resolve_all, resolve
from plugins.store import ConfigStore

logger = structlog.get_logger(__name__)


def dashboard_key(instance_id: str, suffix: str, output_key: str) -> str:
    """``DASH.wx1.0.temp`` with targets, ``DASH.wx1.temp`` without."""
    return f"{DASH_PREFIX}{instance_id}{suffix}.{output_key}"


def merge_inputs(
    template: PluginTemplate,
    instance: PluginInstance,
    target: Optional[Mapping[str, str]] = None,
    fill_empty: bool = False,
) -> Context:
    """Layer template defaults < instance globals < target overrides.

    Args:
        fill_empty: Also replace empty values with the template default
            (used for labels, where an empty value is never wanted)
    """
    merged: Context = template.input_defaults()
    merged.update(instance.input_values)
    if target:
        merged.update(target)
    if fill_empty:
        for declared in template.inputs:
            if declared.default and not merged.get(declared.key):
                merged[declared.key] = declared.default
    return merged


def _label_pattern(template: PluginTemplate, output: PluginOutput) -> str:
    return output.label or f"{template.meta.name} {output.key}"


class DashboardSync:
    """Keeps registry placeholders and MonitorItems in step with instances."""

    def __init__(self, store: ConfigStore, registry: ValueRegistry):
        self._store = store
        self._registry = registry

    def sync_instance(self, instance: PluginInstance, template: PluginTemplate) -> bool:
        """Create, relabel and prune this instance's dashboard items.

        Returns:
            True if the store was modified (and saved)
        """
        changed = False
        valid_keys: Set[str] = set()

        with self._store.lock:
            for index, target in enumerate(instance.effective_targets()):
                inputs = merge_inputs(template, instance, target, fill_empty=True)
                suffix = instance.target_suffix(index)

                for output in template.outputs:
                    key = dashboard_key(instance.id, suffix, output.key)
                    valid_keys.add(key)

                    if not self._registry.get_value(key):
                        self._registry.inject_value(key, STATUS_LOADING)

                    item = self._store.get_monitor_item(key)
                    if item is None:
                        self._insert_item(instance.id, template, output, key, inputs)
                        changed = True
                        continue

                    if self._refresh_labels(item, template, output, inputs):
                        changed = True
                    if item.unit != output.unit:
                        item.unit = output.unit
                        changed = True

            prefix = f"{DASH_PREFIX}{instance.id}."
            stale = [
                m for m in self._store.monitor_items
                if m.key.startswith(prefix) and m.key not in valid_keys
            ]
            for item in stale:
                self._store.monitor_items.remove(item)
                changed = True

        if changed:
            self._store.save()
            logger.info(
                "Dashboard items synced",
                instance_id=instance.id,
                items=len(valid_keys),
                removed=len(stale),
            )
        return changed

    def _insert_item(
        self,
        instance_id: str,
        template: PluginTemplate,
        output: PluginOutput,
        key: str,
        inputs: Context,
    ) -> MonitorItem:
        """Add a new item right after this instance's last sibling."""
        items = self._store.monitor_items
        peer_prefix = f"{DASH_PREFIX}{instance_id}."
        last_peer = next((m for m in reversed(items) if m.key.startswith(peer_prefix)), None)

        if last_peer is not None:
            next_sort = last_peer.sort_index + 1
            next_tb_sort = last_peer.taskbar_sort_index + 1
        else:
            next_sort = max((m.sort_index for m in items), default=0) + 1
            next_tb_sort = max((m.taskbar_sort_index for m in items), default=0) + 1

        for m in items:
            if m.sort_index >= next_sort:
                m.sort_index += 1
            if m.taskbar_sort_index >= next_tb_sort:
                m.taskbar_sort_index += 1

        label = resolve(_label_pattern(template, output), inputs)
        short = resolve(output.short_label, inputs)
        item = MonitorItem(
            key=key,
            dynamic_label=label or f"{template.meta.name} {output.key}",
            dynamic_taskbar_label=short or output.key,
            unit=output.unit,
            sort_index=next_sort,
            taskbar_sort_index=next_tb_sort,
        )
        items.append(item)
        return item

    @staticmethod
    def _refresh_labels(
        item: MonitorItem,
        template: PluginTemplate,
        output: PluginOutput,
        context: Context,
    ) -> bool:
        """Re-derive dynamic labels; untouched unless fully resolvable."""
        changed = False

        label_pattern = _label_pattern(template, output)
        if can_resolve_all(label_pattern, context):
            label = resolve(label_pattern, context)
            if label and item.dynamic_label != label:
                item.dynamic_label = label
                changed = True

        if can_resolve_all(output.short_label, context):
            short = resolve(output.short_label, context)
            if short and item.dynamic_taskbar_label != short:
                item.dynamic_taskbar_label = short
                changed = True

        return changed

    def publish_outputs(
        self,
        instance: PluginInstance,
        template: PluginTemplate,
        context: Context,
        suffix: str,
    ) -> bool:
        """Publish every declared output of one target run.

        Labels that drifted with live data are updated in memory only.

        Returns:
            True if any label changed (caller raises schema-changed)
        """
        schema_changed = False
        with self._store.lock:
            for output in template.outputs:
                key = dashboard_key(instance.id, suffix, output.key)
                value = resolve(output.format, context) or STATUS_EMPTY
                self._registry.inject_value(key, value)

                if output.color:
                    self._registry.inject_value(f"{key}.Color", resolve(output.color, context))

                item = self._store.get_monitor_item(key)
                if item is not None and self._refresh_labels(item, template, output, context):
                    schema_changed = True
        return schema_changed

    def publish_error(self, instance: PluginInstance, template: PluginTemplate, suffix: str) -> None:
        for output in template.outputs:
            self._registry.inject_value(dashboard_key(instance.id, suffix, output.key), STATUS_ERROR)

    def remove_instance_items(self, instance_id: str) -> int:
        """Drop all dashboard items and registry values of an instance."""
        main_key = f"{DASH_PREFIX}{instance_id}"
        with self._store.lock:
            doomed = [
                m for m in self._store.monitor_items
                if m.key == main_key or m.key.startswith(main_key + ".")
            ]
            for item in doomed:
                self._store.monitor_items.remove(item)

        self._registry.remove(main_key)
        if doomed:
            self._store.save()
        return len(doomed)

    def try_get_smart_label(
        self,
        item_key: str,
        templates: Dict[str, PluginTemplate],
        field: str = "label",
    ) -> str:
        """Best-effort label for a dashboard key, derived from its template."""
        if not item_key or not item_key.startswith(DASH_PREFIX):
            return ""

        with self._store.lock:
            instances = list(self._store.instances)

        for inst in instances:
            prefix = f"{DASH_PREFIX}{inst.id}."
            if not (item_key.startswith(prefix) or item_key == f"{DASH_PREFIX}{inst.id}"):
                continue
            template = templates.get(inst.template_id)
            if template is None:
                continue

            suffix = item_key[len(prefix):]
            for output in template.outputs:
                if suffix != output.key and not suffix.endswith("." + output.key):
                    continue

                target = None
                head = suffix[: -len(output.key)].rstrip(".")
                if head.isdigit() and int(head) < len(inst.targets):
                    target = inst.targets[int(head)]
                inputs = merge_inputs(template, inst, target, fill_empty=True)

                pattern = output.short_label if field == "short_label" else output.label
                pattern = pattern or template.meta.name
                resolved = resolve(pattern, inputs)
                if not resolved or not can_resolve_all(pattern, inputs):
                    return f"{template.meta.name} {output.key}"
                return resolved
            return template.meta.name
        return ""
