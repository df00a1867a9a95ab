"""Plugin runtime API endpoints."""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from api.schemas.plugin import (
    InstanceStatus,
    LabelResponse,
    OutputSummary,
    ReconcileResponse,
    TemplateSummary,
    ValuesResponse,
)
from app.config import get_settings
from app.dependencies import get_dashboard, get_registry, get_scheduler, get_store
from core.exceptions import NotFoundError
from plugins.dashboard import DashboardSync
from plugins.registry import ValueRegistry
from plugins.scheduler import PluginScheduler
from plugins.store import ConfigStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/templates", response_model=List[TemplateSummary], summary="List loaded templates")
async def list_templates(scheduler: PluginScheduler = Depends(get_scheduler)):
    return [
        TemplateSummary(
            id=t.id,
            name=t.meta.name or t.id,
            version=t.meta.version,
            execution_type=t.execution.type.value,
            interval_ms=t.execution.interval,
            inputs=[i.key for i in t.inputs],
            outputs=[
                OutputSummary(key=o.key, label=o.label, short_label=o.short_label, unit=o.unit)
                for o in t.outputs
            ],
        )
        for t in scheduler.templates.values()
    ]


@router.get("/instances", response_model=List[InstanceStatus], summary="List instances and job state")
async def list_instances(
    scheduler: PluginScheduler = Depends(get_scheduler),
    store: ConfigStore = Depends(get_store),
):
    with store.lock:
        instances = list(store.instances)

    result = []
    for instance in instances:
        job = scheduler.get_job(instance.id)
        result.append(
            InstanceStatus(
                id=instance.id,
                template_id=instance.template_id,
                enabled=instance.enabled,
                running=job is not None,
                state=job.state.value if job else None,
                interval_ms=int(job.interval * 1000) if job else None,
                runs=job.runs if job else 0,
                last_run_at=job.last_run_at if job else None,
                targets=len(instance.targets),
            )
        )
    return result


@router.post("/reload", response_model=ReconcileResponse, summary="Reload configuration and reconcile")
async def reload_plugins(
    scheduler: PluginScheduler = Depends(get_scheduler),
    store: ConfigStore = Depends(get_store),
):
    """Re-read templates and the configuration file, then reconcile jobs."""
    settings = get_settings()
    store.load()
    templates = scheduler.load_templates(settings.PLUGIN_DIR)
    outcome = scheduler.reconcile(store)
    logger.info(
        f"Plugin reload: {len(templates)} template(s), "
        f"{len(outcome['started'])} started, {len(outcome['stopped'])} stopped"
    )
    return ReconcileResponse(
        templates=len(templates),
        instances=len(store.instances),
        started=outcome["started"],
        stopped=outcome["stopped"],
    )


@router.post("/instances/{instance_id}/restart", summary="Restart one instance")
async def restart_instance(
    instance_id: str,
    scheduler: PluginScheduler = Depends(get_scheduler),
    store: ConfigStore = Depends(get_store),
):
    if store.get_instance(instance_id) is None:
        raise NotFoundError(f"Plugin instance '{instance_id}' not found")
    running = scheduler.restart_instance(instance_id)
    return {"id": instance_id, "running": running}


@router.delete("/instances/{instance_id}", summary="Stop and remove one instance")
async def remove_instance(
    instance_id: str,
    scheduler: PluginScheduler = Depends(get_scheduler),
):
    scheduler.remove_instance(instance_id)
    return {"id": instance_id, "removed": True}


@router.get("/values", response_model=ValuesResponse, summary="Registry snapshot")
async def get_values(
    prefix: Optional[str] = Query(default=None, description="Only keys starting with this prefix"),
    registry: ValueRegistry = Depends(get_registry),
):
    values = registry.snapshot(prefix)
    return ValuesResponse(count=len(values), values=values)


@router.get("/labels/{item_key}", response_model=LabelResponse, summary="Smart label for a dashboard key")
async def get_label(
    item_key: str,
    field: Literal["label", "short_label"] = Query(default="label"),
    scheduler: PluginScheduler = Depends(get_scheduler),
    dashboard: DashboardSync = Depends(get_dashboard),
):
    label = dashboard.try_get_smart_label(item_key, scheduler.templates, field)
    return LabelResponse(key=item_key, field=field, label=label)
