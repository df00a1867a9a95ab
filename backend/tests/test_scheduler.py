"""Tests for the instance scheduler: template loading, reconcile, job lifecycle."""

import asyncio
import json

import pytest

from core.constants import JobState
from core.exceptions import NotFoundError
from plugins.models import MonitorItem, PluginInstance
from plugins.scheduler import PluginScheduler
from plugins.store import ConfigStore

GEO_BERLIN = "https://api.test/geo?q=Berlin"


@pytest.mark.unit
class TestLoadTemplates:

    async def test_instances_created_for_new_templates(self, scheduler, store, plugin_dir):
        templates = scheduler.load_templates(plugin_dir)

        assert sorted(t.id for t in templates) == ["btc", "weather"]
        assert sorted(scheduler.templates) == ["btc", "weather"]
        weather = store.get_instance("weather")
        assert weather.enabled is True
        assert weather.input_values == {"city": "Berlin", "units": "metric"}

    async def test_existing_binding_not_duplicated(self, scheduler, store, plugin_dir):
        store.instances = [PluginInstance(id="my-weather", template_id="weather")]
        scheduler.load_templates(plugin_dir)
        assert [i.id for i in store.instances if i.template_id == "weather"] == ["my-weather"]

    async def test_taken_id_gets_random_suffix(self, scheduler, store, plugin_dir):
        store.instances = [PluginInstance(id="weather", template_id="btc")]
        scheduler.load_templates(plugin_dir)

        created = [i for i in store.instances if i.template_id == "weather"]
        assert len(created) == 1
        assert created[0].id.startswith("weather-")
        assert len(created[0].id) == len("weather-") + 8

    async def test_store_saved_when_instances_added(self, executor, dashboard, plugin_dir, tmp_path):
        path = tmp_path / "settings.json"
        store = ConfigStore(str(path))
        sched = PluginScheduler(store, executor, dashboard)

        sched.load_templates(plugin_dir)
        document = json.loads(path.read_text(encoding="utf-8"))
        assert {i["id"] for i in document["plugin_instances"]} == {"btc", "weather"}

        path.unlink()
        sched.load_templates(plugin_dir)
        assert not path.exists()

    async def test_get_template(self, scheduler, plugin_dir):
        scheduler.load_templates(plugin_dir)
        assert scheduler.get_template("btc").meta.name == "Bitcoin"
        assert scheduler.get_template("missing") is None


@pytest.mark.unit
class TestReconcile:
    """Test reconciliation of configured instances with running jobs."""

    @pytest.fixture
    def loaded(self, scheduler, plugin_dir):
        scheduler.load_templates(plugin_dir)
        return scheduler

    async def test_starts_enabled_instances(self, loaded, store, registry):
        outcome = loaded.reconcile(store)
        assert sorted(outcome["started"]) == ["btc", "weather"]
        assert loaded.is_running("weather")
        assert registry.get_value("DASH.weather.temp") in ("...", "21.5")

    async def test_idempotent(self, loaded, store):
        loaded.reconcile(store)
        task = loaded.get_job("weather").task

        outcome = loaded.reconcile(store)
        assert outcome == {"started": [], "stopped": []}
        assert loaded.get_job("weather").task is task

    async def test_changed_instance_restarted(self, loaded, store, waiter):
        loaded.reconcile(store)
        task = loaded.get_job("weather").task

        store.get_instance("weather").input_values["city"] = "Paris"
        outcome = loaded.reconcile(store)

        assert outcome["started"] == ["weather"]
        assert loaded.get_job("weather").task is not task
        await waiter(task.done)
        assert task.cancelled()

    async def test_disabled_instance_stopped(self, loaded, store):
        loaded.reconcile(store)
        store.get_instance("btc").enabled = False

        outcome = loaded.reconcile(store)
        assert outcome["stopped"] == ["btc"]
        assert not loaded.is_running("btc")
        assert loaded.is_running("weather")

    async def test_unknown_template_not_started(self, loaded, store):
        store.instances.append(PluginInstance(id="ghost", template_id="does-not-exist"))
        outcome = loaded.reconcile(store)
        assert "ghost" not in outcome["started"]
        assert not loaded.is_running("ghost")

    async def test_dashboard_items_synced(self, loaded, store):
        loaded.reconcile(store)
        assert store.get_monitor_item("DASH.weather.temp").dynamic_label == "Berlin Temp"
        assert store.get_monitor_item("DASH.btc.price").dynamic_label == "BTC"

    async def test_config_hash(self):
        a = PluginInstance(id="a", template_id="t", input_values={"x": "1", "y": "2"})
        b = PluginInstance(id="a", template_id="t", input_values={"y": "2", "x": "1"})
        c = PluginInstance(id="a", template_id="t", input_values={"x": "1", "y": "3"})
        assert PluginScheduler._config_hash(a) == PluginScheduler._config_hash(b)
        assert PluginScheduler._config_hash(a) != PluginScheduler._config_hash(c)


@pytest.mark.unit
class TestJobLifecycle:
    """Test the job state machine and interval handling."""

    @pytest.fixture
    def loaded(self, scheduler, plugin_dir):
        scheduler.load_templates(plugin_dir)
        return scheduler

    async def test_runs_once_immediately_then_idles(self, loaded, store, registry, fake_api, waiter):
        fake_api.gate = asyncio.Event()
        loaded.reconcile(store)
        job = loaded.get_job("weather")

        await waiter(lambda: fake_api.calls(GEO_BERLIN) == 1)
        assert job.state == JobState.RUNNING
        assert job.runs == 0

        fake_api.gate.set()
        await waiter(lambda: job.runs == 1)
        assert job.state == JobState.IDLE
        assert job.last_run_at is not None
        assert registry.get_value("DASH.weather.temp") == "21.5"

        # next run is a full interval away
        await asyncio.sleep(0.05)
        assert job.runs == 1

    async def test_interval_floor(self, loaded, store, chain_template):
        inst = store.get_instance("weather")
        inst.custom_interval = 50
        job = loaded.start(inst, chain_template)
        assert job.interval == 1.0

        inst.custom_interval = 0
        job = loaded.start(inst, chain_template)
        assert job.interval == 600.0

    async def test_stop(self, loaded, store):
        loaded.reconcile(store)
        job = loaded.get_job("weather")

        assert loaded.stop("weather") is True
        assert job.state == JobState.STOPPED
        with pytest.raises(asyncio.CancelledError):
            await job.task
        assert loaded.stop("weather") is False
        assert loaded.reconcile(store)["started"] == ["weather"]

    async def test_shutdown_stops_everything(self, loaded, store):
        loaded.reconcile(store)
        jobs = [loaded.get_job("weather"), loaded.get_job("btc")]

        await loaded.shutdown()
        assert loaded.get_status()["running_jobs"] == 0
        assert all(j.task.done() for j in jobs)
        assert all(j.state == JobState.STOPPED for j in jobs)

    async def test_restart_instance(self, loaded, store):
        loaded.reconcile(store)
        task = loaded.get_job("btc").task

        assert loaded.restart_instance("btc") is True
        assert loaded.get_job("btc").task is not task
        assert loaded.reconcile(store) == {"started": [], "stopped": []}

    async def test_restart_disabled_removes_items(self, loaded, store, registry):
        loaded.reconcile(store)
        store.get_instance("weather").enabled = False

        assert loaded.restart_instance("weather") is False
        assert not loaded.is_running("weather")
        assert store.get_monitor_item("DASH.weather.temp") is None
        assert registry.snapshot("DASH.weather") == {}

    async def test_remove_instance(self, loaded, store):
        loaded.reconcile(store)
        store.monitor_items.append(MonitorItem(key="DASH.btc.extra"))

        loaded.remove_instance("btc")
        assert store.get_instance("btc") is None
        assert not loaded.is_running("btc")
        assert not any(m.key.startswith("DASH.btc.") for m in store.monitor_items)

    async def test_remove_unknown_instance(self, loaded):
        with pytest.raises(NotFoundError):
            loaded.remove_instance("nope")

    async def test_status(self, loaded, store):
        loaded.reconcile(store)
        status = loaded.get_status()
        assert status["templates"] == 2
        assert status["running_jobs"] == 2
        assert status["jobs"]["btc"]["interval_ms"] == 30000
        assert status["jobs"]["weather"]["template_id"] == "weather"

    async def test_schema_subscription(self, loaded, store, fake_api, waiter):
        notified = []
        loaded.subscribe_schema_changed(lambda: notified.append(1))
        loaded.reconcile(store)

        # geo returns "Berlin Mitte", replacing the "Berlin Temp" label
        await waiter(lambda: notified)
        assert store.get_monitor_item("DASH.weather.temp").dynamic_label == "Berlin Mitte Temp"
