"""Instance Scheduler — reconciles configured instances with running jobs.

One PluginScheduler per process owns:
1. The loaded templates (by id)
2. One InstanceJob per running instance: a long-lived asyncio task that
   runs the instance once immediately, then once per interval
3. A structural hash per instance, so reconciling an unchanged
   configuration is a no-op

Job lifecycle: IDLE -> RUNNING -> IDLE ... -> STOPPED. A run never
overlaps the previous one, and a stopped job is never re-armed.
"""

import asyncio
import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from core.constants import JobState
from core.exceptions import NotFoundError
from plugins.dashboard import DashboardSync
from plugins.executor import PluginExecutor
from plugins.loader import load_templates
from plugins.models import PluginInstance, PluginTemplate
from plugins.store import ConfigStore

logger = structlog.get_logger(__name__)


@dataclass
class InstanceJob:
    """Runtime state of one scheduled instance."""

    instance_id: str
    template_id: str
    interval: float  # seconds
    state: JobState = JobState.IDLE
    task: Optional[asyncio.Task] = None
    runs: int = 0
    started_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "template_id": self.template_id,
            "state": self.state.value,
            "interval_ms": int(self.interval * 1000),
            "runs": self.runs,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
        }


class PluginScheduler:
    """Starts, stops and restarts plugin instance jobs."""

    def __init__(
        self,
        store: ConfigStore,
        executor: PluginExecutor,
        dashboard: DashboardSync,
        min_interval_ms: int = 1000,
    ):
        self._store = store
        self._executor = executor
        self._dashboard = dashboard
        self._min_interval_ms = min_interval_ms
        self._templates: Dict[str, PluginTemplate] = {}
        self._jobs: Dict[str, InstanceJob] = {}
        self._hashes: Dict[str, str] = {}

    # ── Templates ──

    @property
    def templates(self) -> Dict[str, PluginTemplate]:
        return dict(self._templates)

    def get_template(self, template_id: str) -> Optional[PluginTemplate]:
        return self._templates.get(template_id)

    def load_templates(self, directory: Union[str, Path]) -> List[PluginTemplate]:
        """Load template documents and give every template an instance.

        A template without any configured instance gets a new enabled one
        with default inputs; the store is saved if anything was added.
        """
        templates = load_templates(directory)
        self._templates = {t.id: t for t in templates}

        added = 0
        with self._store.lock:
            bound = {i.template_id for i in self._store.instances}
            taken = {i.id for i in self._store.instances}
            for template in templates:
                if template.id in bound:
                    continue
                instance_id = template.id
                if instance_id in taken:
                    instance_id = f"{template.id}-{uuid.uuid4().hex[:8]}"
                self._store.instances.append(
                    PluginInstance(
                        id=instance_id,
                        template_id=template.id,
                        enabled=True,
                        input_values=template.input_defaults(),
                    )
                )
                taken.add(instance_id)
                added += 1

        if added:
            self._store.save()
            logger.info("Instances created for new templates", count=added)
        return templates

    # ── Reconciliation ──

    @staticmethod
    def _config_hash(instance: PluginInstance) -> Optional[str]:
        """Structural digest of an instance, or None when it cannot be computed."""
        try:
            payload = json.dumps(instance.model_dump(mode="json"), sort_keys=True)
        except (TypeError, ValueError) as e:
            logger.warning("Config hash failed", instance_id=instance.id, error=str(e))
            return None
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def reconcile(self, store: Optional[ConfigStore] = None) -> Dict[str, List[str]]:
        """Bring running jobs in line with the enabled instances of ``store``.

        Returns:
            Ids of the jobs started and stopped by this pass
        """
        store = store or self._store
        enabled = store.enabled_instances()
        enabled_ids = {i.id for i in enabled}
        started: List[str] = []
        stopped: List[str] = []

        for instance_id in list(self._jobs):
            if instance_id not in enabled_ids:
                self.stop(instance_id)
                stopped.append(instance_id)

        seen = set()
        for instance in enabled:
            if instance.id in seen:
                logger.warning("Duplicate instance id ignored", instance_id=instance.id)
                continue
            seen.add(instance.id)

            template = self._templates.get(instance.template_id)
            if template is None:
                logger.warning(
                    "Instance references unknown template",
                    instance_id=instance.id,
                    template_id=instance.template_id,
                )
                continue

            config_hash = self._config_hash(instance)
            if (
                config_hash is not None
                and instance.id in self._jobs
                and self._hashes.get(instance.id) == config_hash
            ):
                continue

            if self.stop(instance.id):
                stopped.append(instance.id)
            self._dashboard.sync_instance(instance, template)
            self.start(instance, template)
            if config_hash is not None:
                self._hashes[instance.id] = config_hash
            started.append(instance.id)

        if started or stopped:
            logger.info("Reconciled plugin instances", started=len(started), stopped=len(stopped))
        return {"started": started, "stopped": stopped}

    # ── Job lifecycle ──

    def _interval_for(self, instance: PluginInstance, template: PluginTemplate) -> float:
        interval_ms = instance.custom_interval or template.execution.interval
        return max(self._min_interval_ms, interval_ms) / 1000.0

    def start(self, instance: PluginInstance, template: PluginTemplate) -> InstanceJob:
        """Start the periodic job of ``instance``. Must be called on the event loop."""
        if instance.id in self._jobs:
            self.stop(instance.id)

        snapshot = instance.model_copy(deep=True)
        job = InstanceJob(
            instance_id=snapshot.id,
            template_id=template.id,
            interval=self._interval_for(snapshot, template),
            started_at=datetime.now(timezone.utc),
        )
        job.task = asyncio.create_task(
            self._run_job(job, snapshot, template),
            name=f"plugin:{snapshot.id}",
        )
        self._jobs[snapshot.id] = job
        logger.info(
            "Plugin instance started",
            instance_id=snapshot.id,
            template_id=template.id,
            interval_s=job.interval,
        )
        return job

    async def _run_job(self, job: InstanceJob, instance: PluginInstance, template: PluginTemplate) -> None:
        try:
            while job.state != JobState.STOPPED:
                job.state = JobState.RUNNING
                await self._executor.run_instance(instance, template)
                job.runs += 1
                job.last_run_at = datetime.now(timezone.utc)
                job.state = JobState.IDLE
                await asyncio.sleep(job.interval)
        except asyncio.CancelledError:
            job.state = JobState.STOPPED
            raise

    def stop(self, instance_id: str) -> bool:
        """Cancel the job of ``instance_id``; False if it was not running."""
        self._hashes.pop(instance_id, None)
        job = self._jobs.pop(instance_id, None)
        if job is None:
            return False

        job.state = JobState.STOPPED
        if job.task is not None and not job.task.done():
            job.task.cancel()
        logger.info("Plugin instance stopped", instance_id=instance_id, runs=job.runs)
        return True

    def stop_all(self) -> List[asyncio.Task]:
        """Stop every job and return their (cancelling) tasks."""
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for instance_id in list(self._jobs):
            self.stop(instance_id)
        return tasks

    async def shutdown(self) -> None:
        """Stop all jobs, wait for them to unwind, close the HTTP client."""
        tasks = self.stop_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._executor.aclose()
        logger.info("Plugin scheduler shut down", jobs=len(tasks))

    def restart_instance(self, instance_id: str) -> bool:
        """Re-read one instance from the store and restart it.

        A missing or disabled instance is stopped and its dashboard entries
        removed.

        Returns:
            True if the instance is running afterwards
        """
        self.stop(instance_id)
        instance = self._store.get_instance(instance_id)
        if instance is None or not instance.enabled:
            self._dashboard.remove_instance_items(instance_id)
            return False

        template = self._templates.get(instance.template_id)
        if template is None:
            logger.warning(
                "Cannot restart instance with unknown template",
                instance_id=instance_id,
                template_id=instance.template_id,
            )
            return False

        self._executor.clear_cache(instance_id)
        self._dashboard.sync_instance(instance, template)
        self.start(instance, template)
        config_hash = self._config_hash(instance)
        if config_hash is not None:
            self._hashes[instance_id] = config_hash
        return True

    def remove_instance(self, instance_id: str) -> None:
        """Stop an instance and delete it with its dashboard entries.

        Raises:
            NotFoundError: If the store has no such instance
        """
        with self._store.lock:
            instance = next((i for i in self._store.instances if i.id == instance_id), None)
            if instance is None:
                raise NotFoundError(f"Plugin instance '{instance_id}' not found")
            self._store.instances.remove(instance)

        self.stop(instance_id)
        self._executor.clear_cache(instance_id)
        self._dashboard.remove_instance_items(instance_id)
        self._store.save()
        logger.info("Plugin instance removed", instance_id=instance_id)

    # ── Introspection ──

    def is_running(self, instance_id: str) -> bool:
        return instance_id in self._jobs

    def get_job(self, instance_id: str) -> Optional[InstanceJob]:
        return self._jobs.get(instance_id)

    def get_status(self) -> Dict[str, Any]:
        return {
            "templates": len(self._templates),
            "running_jobs": len(self._jobs),
            "cached_responses": len(self._executor.cache),
            "jobs": {job_id: job.to_dict() for job_id, job in self._jobs.items()},
        }

    def subscribe_schema_changed(self, callback: Callable[[], None]) -> None:
        self._executor.add_schema_listener(callback)
