# backend/icm/plugins/host.py
"""
Post-processing plugins.

Plugins are plain callables registered by name in a PostProcessorRegistry;
a scheme refers to one by that name. Nothing is ever loaded from a path
taken from scheme data.

    def my_plugin(log: dict, context: PluginContext) -> dict | None: ...

`log` is a deep copy of the execution log in its camelCase document form.
Returning None means "I edited `log` in place".
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from icm.core.config import settings
from icm.core.errors import PostProcessingError
from icm.schemas.execution import ExecutionLog, PostProcessingLog, utcnow

logger = logging.getLogger(__name__)

PluginResult = Optional[dict]
PostProcessor = Callable[[dict, "PluginContext"], Union[PluginResult, Awaitable[PluginResult]]]

# plugins may change results, never the identity of the run
PROTECTED_FIELDS = ("run_id", "scheme_id", "tenant_id", "mode")


@dataclass(frozen=True)
class PluginContext:
    scheme_id: str
    mode: str
    tenant_id: str
    timestamp: datetime
    scheme_snapshot: dict[str, Any] = field(default_factory=dict)


class PostProcessorRegistry:
    def __init__(self) -> None:
        self._plugins: dict[str, PostProcessor] = {}

    def register(self, name: str, func: Optional[PostProcessor] = None):
        """
        registry.register("bonus", fn)  or  @registry.register("bonus")
        """
        key = (name or "").strip()
        if not key:
            raise ValueError("Post-processor name is required")

        def _add(fn: PostProcessor) -> PostProcessor:
            if key in self._plugins and self._plugins[key] is not fn:
                raise ValueError(f"Post-processor {key!r} is already registered")
            self._plugins[key] = fn
            return fn

        if func is not None:
            return _add(func)
        return _add

    def get(self, name: str) -> Optional[PostProcessor]:
        return self._plugins.get((name or "").strip())

    def names(self) -> list[str]:
        return sorted(self._plugins)


def build_default_registry() -> PostProcessorRegistry:
    from icm.plugins.bonus import qualified_bonus

    registry = PostProcessorRegistry()
    registry.register("qualified_bonus", qualified_bonus)
    return registry


class PostProcessorHost:
    def __init__(
        self,
        registry: Optional[PostProcessorRegistry] = None,
        *,
        timeout_seconds: float = settings.POST_PROCESSOR_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry if registry is not None else build_default_registry()
        self.timeout_seconds = timeout_seconds

    async def invoke(self, plugin_ref: str, execution_log: ExecutionLog, context: PluginContext) -> ExecutionLog:
        """
        Run the named plugin against a copy of `execution_log`.

        Always returns a log. On any plugin failure (missing, raising, timing
        out, returning garbage) the original results come back untouched with
        postProcessingLog.status set to "error" or "timeout".
        """
        plugin = self.registry.get(plugin_ref)
        if plugin is None:
            logger.warning("Post-processor %r is not registered (run %s)", plugin_ref, execution_log.run_id)
            return _degraded(execution_log, plugin_ref, "error", f"Post-processor '{plugin_ref}' is not registered")

        payload = copy.deepcopy(execution_log.to_document())
        call_context = PluginContext(
            scheme_id=context.scheme_id,
            mode=context.mode,
            tenant_id=context.tenant_id,
            timestamp=context.timestamp,
            scheme_snapshot=copy.deepcopy(context.scheme_snapshot),
        )

        try:
            result = await asyncio.wait_for(self._call(plugin, payload, call_context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Post-processor %r timed out after %ss (run %s)", plugin_ref, self.timeout_seconds, execution_log.run_id)
            return _degraded(
                execution_log,
                plugin_ref,
                "timeout",
                f"Post-processor '{plugin_ref}' timed out after {self.timeout_seconds}s",
            )
        except Exception as exc:
            logger.exception("Post-processor %r failed (run %s)", plugin_ref, execution_log.run_id)
            return _degraded(execution_log, plugin_ref, "error", f"Plugin error: {exc}")

        try:
            processed = _accept(execution_log, payload if result is None else result)
        except PostProcessingError as exc:
            logger.error("Post-processor %r returned an unusable log: %s", plugin_ref, exc.message)
            return _degraded(execution_log, plugin_ref, "error", exc.message)

        if processed.post_processing_log is None:
            processed.post_processing_log = PostProcessingLog(
                status="success",
                message=f"Post-processor '{plugin_ref}' applied",
            )
        processed.post_processing_log.plugin = plugin_ref
        logger.info("Post-processor %r finished with status %s", plugin_ref, processed.post_processing_log.status)
        return processed

    async def _call(self, plugin: PostProcessor, payload: dict, context: PluginContext) -> PluginResult:
        if inspect.iscoroutinefunction(plugin):
            result = await plugin(payload, context)
        else:
            # sync plugins run off the event loop so the timeout can fire
            result = await asyncio.to_thread(plugin, payload, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def _accept(original: ExecutionLog, result: Any) -> ExecutionLog:
    if not isinstance(result, dict):
        raise PostProcessingError(f"Post-processor returned {type(result).__name__}, expected a log document")
    try:
        processed = ExecutionLog.model_validate(result)
    except PydanticValidationError as exc:
        raise PostProcessingError(f"Post-processor returned an invalid log: {exc.error_count()} validation error(s)")

    for name in PROTECTED_FIELDS:
        if getattr(processed, name) != getattr(original, name):
            raise PostProcessingError(f"Post-processor must not change {name}")

    # run state and error belong to the orchestrator
    processed.state = original.state
    processed.error = original.error
    processed.executed_at = original.executed_at
    return processed


def _degraded(log: ExecutionLog, plugin_ref: str, status: str, message: str) -> ExecutionLog:
    return log.model_copy(
        update={
            "post_processing_log": PostProcessingLog(
                status=status,
                message=message,
                timestamp=utcnow(),
                plugin=plugin_ref,
            )
        }
    )
