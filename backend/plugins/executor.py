"""Plugin Execution Engine — runs one instance of a template.

For every target of an instance:

- Merge inputs into a fresh context (template defaults < globals < target)
- Fetch: one request (api_json / api_text) or a sequential chain of steps
- Extract values from the response and run transform pipelines
- Publish outputs to the registry, or "Err" for every output on failure

Chain steps share a response cache and an in-flight request map across
all instances. Concurrent steps resolving to the same cache key wait on
one fetch. The fetch runs as its own task: a caller that gets cancelled
stops waiting, but the fetch still completes and warms the cache for the
next tick.
"""

import asyncio
import codecs
import time
from typing import Callable, Dict, List, Mapping, Optional

import httpx
import structlog

from core.constants import ExecutionType, ResponseFormat
from core.exceptions import StepExecutionError
from core.logging_config import plugin_log_context
from plugins.cache import StepCache, build_cache_key
from plugins.dashboard import DashboardSync, merge_inputs
from plugins.models import PluginInstance, PluginStep, PluginTemplate
from plugins.registry import ValueRegistry
from plugins.resolver import Context, apply_transforms, parse_and_extract, resolve

logger = structlog.get_logger(__name__)

SchemaListener = Callable[[], None]


class PluginExecutor:
    """Executes plugin instances and publishes their outputs.

    One executor per process; its cache and in-flight map are shared by
    every instance and target it runs.
    """

    def __init__(
        self,
        registry: ValueRegistry,
        dashboard: DashboardSync,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        user_agent: str = "PluginRuntime/1.0",
        target_stagger: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._dashboard = dashboard
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._user_agent = user_agent
        self._target_stagger = target_stagger
        self._cache = StepCache(clock=clock)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._schema_listeners: List[SchemaListener] = []

    # ── Lifecycle ──

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def add_schema_listener(self, listener: SchemaListener) -> None:
        """Called with no arguments whenever published labels change."""
        self._schema_listeners.append(listener)

    def _notify_schema_changed(self) -> None:
        for listener in list(self._schema_listeners):
            try:
                listener()
            except Exception as e:
                logger.warning("Schema listener failed", error=str(e))

    def clear_cache(self, instance_id: Optional[str] = None) -> int:
        """Drop cached step responses, for one instance or all."""
        return self._cache.clear(instance_id)

    @property
    def cache(self) -> StepCache:
        return self._cache

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # ── Instance execution ──

    async def run_instance(self, instance: PluginInstance, template: PluginTemplate) -> None:
        """Run every target of ``instance`` concurrently.

        Cancelling the task awaiting this coroutine cancels all of its
        target tasks (but not detached step fetches).
        """
        targets = instance.effective_targets()
        tasks = [
            asyncio.create_task(self._run_target(instance, template, index, target))
            for index, target in enumerate(targets)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _run_target(
        self,
        instance: PluginInstance,
        template: PluginTemplate,
        index: int,
        target: Mapping[str, str],
    ) -> None:
        if index > 0 and self._target_stagger > 0:
            # Soft rate limit: don't burst near-identical requests at one API
            await asyncio.sleep(self._target_stagger * index)

        suffix = instance.target_suffix(index)
        context = merge_inputs(template, instance, target)
        execution = template.execution

        with plugin_log_context(instance.id, index, template.id):
            try:
                if execution.type == ExecutionType.API_TEXT:
                    raw = await self._fetch_single(template, context)
                    self._registry.inject_value(f"{instance.id}{suffix}", raw)
                    return

                if execution.type == ExecutionType.CHAIN:
                    for step in execution.steps or []:
                        context = await self._run_step(instance, step, context, suffix)
                else:
                    raw = await self._fetch_single(template, context)
                    parse_and_extract(raw, execution.extract, context, ResponseFormat.JSON)

                apply_transforms(execution.process, context)

                if template.outputs and self._dashboard.publish_outputs(instance, template, context, suffix):
                    logger.info("Plugin labels changed")
                    self._notify_schema_changed()

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._dashboard.publish_error(instance, template, suffix)
                logger.error("Plugin execution failed", error=str(e))

    async def _fetch_single(self, template: PluginTemplate, context: Context) -> str:
        execution = template.execution
        return await self._fetch(
            method=execution.method,
            url=resolve(execution.url, context),
            body=resolve(execution.body, context),
            headers=execution.headers,
        )

    # ── Chain steps ──

    async def _run_step(
        self,
        instance: PluginInstance,
        step: PluginStep,
        context: Context,
        suffix: str,
    ) -> Context:
        """Run one chain step against the target's context and hand it back."""
        if step.skip_if_set and context.get(step.skip_if_set):
            logger.debug("Step skipped", step_id=step.id, guard=step.skip_if_set)
            return context

        url = resolve(step.url, context)
        body = resolve(step.body, context)
        cache_key = build_cache_key(f"{instance.id}{suffix}", step.id, url, body)

        raw = self._cache.get(cache_key, step.cache_minutes)
        if raw is None:
            raw = await self._fetch_coalesced(cache_key, instance.id, step, url, body)
        else:
            logger.debug("Step cache hit", step_id=step.id)

        # Always re-run: transforms may depend on settings changed since caching
        try:
            parse_and_extract(raw, step.extract, context, step.response_format)
        except ValueError as e:
            raise StepExecutionError(f"unparseable response: {e}", step_id=step.id)
        apply_transforms(step.process, context)
        return context

    async def _fetch_coalesced(
        self, cache_key: str, instance_id: str, step: PluginStep, url: str, body: str
    ) -> str:
        # No await between lookup and insert: the check-and-set is atomic on the loop
        task = self._inflight.get(cache_key)
        if task is None:
            task = asyncio.create_task(self._fetch_step(cache_key, instance_id, step, url, body))
            task.add_done_callback(self._log_detached_failure)
            self._inflight[cache_key] = task
        # Shield: our cancellation stops the wait, not the fetch
        return await asyncio.shield(task)

    async def _fetch_step(
        self, cache_key: str, instance_id: str, step: PluginStep, url: str, body: str
    ) -> str:
        try:
            raw = await self._fetch(
                method=step.method,
                url=url,
                body=body,
                headers=step.headers,
                encoding=step.response_encoding,
                step_id=step.id,
            )
            if step.cache_minutes != 0:
                self._cache.put(cache_key, raw, instance_id)
            return raw
        finally:
            if self._inflight.get(cache_key) is asyncio.current_task():
                del self._inflight[cache_key]

    @staticmethod
    def _log_detached_failure(task: asyncio.Task) -> None:
        """Retrieve the outcome so an abandoned fetch never warns as unhandled."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug("Step fetch failed", error=str(error))

    # ── Transport ──

    async def _fetch(
        self,
        method: str,
        url: str,
        body: str = "",
        headers: Optional[Mapping[str, str]] = None,
        encoding: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> str:
        """Issue one request and return the decoded body."""
        method = (method or "GET").upper()
        request_headers = httpx.Headers(headers or {})
        request_headers.setdefault("User-Agent", self._user_agent)
        content = None
        if method == "POST" and body:
            request_headers.setdefault("Content-Type", "application/json; charset=utf-8")
            content = body.encode("utf-8")

        try:
            response = await self._get_client().request(
                "POST" if method == "POST" else "GET",
                url,
                headers=request_headers,
                content=content,
            )
        except httpx.TimeoutException:
            raise StepExecutionError(f"request to {url} timed out", step_id=step_id)
        except httpx.HTTPError as e:
            raise StepExecutionError(f"request to {url} failed: {e}", step_id=step_id)

        if response.status_code >= 400:
            raise StepExecutionError(f"HTTP {response.status_code} from {url}", step_id=step_id)

        return self._decode(response.content, encoding)

    @staticmethod
    def _decode(payload: bytes, encoding: Optional[str]) -> str:
        name = (encoding or "utf-8").strip().lower() or "utf-8"
        try:
            codecs.lookup(name)
        except LookupError:
            name = "utf-8"
        return payload.decode(name, errors="replace")
