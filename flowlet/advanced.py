"""Pre-built control-flow nodes layered on the BaseNode contract.

Loop and map nodes talk to their bodies through reserved ``__``-prefixed Context
keys. LoopNode additionally scopes the current item/index into the body's
params, so a body can read them without touching the shared Context.
"""
import asyncio

import structlog

from .core import DEFAULT_ACTION, BaseNode, _as_items, _merge, _resolve, _run_waves
from .errors import FlowTimeoutError, ValidationError
from .tracing import _get_node_name

logger = structlog.get_logger(__name__)

LOOP_ITEM_KEY = "__loop_item__"
LOOP_INDEX_KEY = "__loop_index__"
LOOP_RESULT_KEY = "__loop_result__"
LOOP_RESULTS_KEY = "__loop_results__"
LOOP_ITERATIONS_KEY = "__loop_iterations__"
MAP_ITEMS_KEY = "__map_items__"
MAP_RESULTS_KEY = "__map_results__"


class ConditionalNode(BaseNode):
    """Runs ``true_node`` or ``false_node`` depending on ``condition(ctx, params)``.

    The chosen branch runs to completion and its action becomes this node's action.
    With a false condition and no false branch nothing runs and the default action
    is returned.
    """

    def __init__(self, condition, true_node, false_node=None, name=None):
        super().__init__(name)
        self.condition, self.true_node, self.false_node = condition, true_node, false_node

    async def _run(self, ctx, params):
        branch = self.true_node if await _resolve(self.condition(ctx, params)) else self.false_node
        if branch is None:
            return DEFAULT_ACTION
        return await branch._invoke(ctx, params)


class LoopNode(BaseNode):
    """Runs ``body`` once per item produced by ``items(ctx, params)``.

    Stops after ``max_iterations`` items (None for no cap). Before each iteration the
    item and its zero-based index are written to ``__loop_item__``/``__loop_index__``.
    With ``aggregate_results`` the body's ``__loop_result__`` (or, if it set none, its
    action) is collected into ``__loop_results__``. The iteration count always lands in
    ``__loop_iterations__``.
    """

    def __init__(self, items, body, max_iterations=100, aggregate_results=True, name=None):
        super().__init__(name)
        self.items, self.body = items, body
        self.max_iterations, self.aggregate_results = max_iterations, aggregate_results

    async def _run(self, ctx, params):
        items = _as_items(await _resolve(self.items(ctx, params)), type(self).__name__, "items")
        if self.max_iterations is not None:
            items = items[:max(self.max_iterations, 0)]
        results, iterations = [], 0
        for index, item in enumerate(items):
            ctx[LOOP_ITEM_KEY], ctx[LOOP_INDEX_KEY] = item, index
            ctx.pop(LOOP_RESULT_KEY, None)
            action = await self.body._invoke(ctx, _merge(params, {LOOP_ITEM_KEY: item, LOOP_INDEX_KEY: index}))
            if self.aggregate_results:
                results.append(ctx[LOOP_RESULT_KEY] if LOOP_RESULT_KEY in ctx else action)
            iterations += 1
        if self.aggregate_results:
            ctx[LOOP_RESULTS_KEY] = results
        ctx[LOOP_ITERATIONS_KEY] = iterations
        return DEFAULT_ACTION


def _discard_outcome(task):
    # The timed-out inner run is no longer awaited by anyone
    if not task.cancelled() and task.exception() is not None:
        logger.warning("timed_out_node_failed_late", error=str(task.exception()))


class TimeoutNode(BaseNode):
    """Races ``inner`` against a ``timeout`` (seconds).

    When the timer wins, FlowTimeoutError is raised and the inner run is cancelled
    cooperatively. Whatever it already wrote to the Context stays there.
    """

    def __init__(self, inner, timeout, name=None):
        super().__init__(name)
        self.inner, self.timeout = inner, timeout

    async def _run(self, ctx, params):
        task = asyncio.ensure_future(self.inner._invoke(ctx, params))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.cancel()
        task.add_done_callback(_discard_outcome)
        logger.warning("node_timeout", node=_get_node_name(self.inner), timeout=self.timeout)
        raise FlowTimeoutError(f"Node '{_get_node_name(self.inner)}' exceeded timeout of {self.timeout}s", timeout=self.timeout)


class MapNode(BaseNode):
    """Applies ``map_fn(ctx, item)`` to every item under ``__map_items__``.

    Results are written, in input order, to ``__map_results__``. ``max_concurrency``
    bounds each wave of in-flight calls; 0 or less runs every item in one wave.
    """

    def __init__(self, map_fn, max_concurrency=0, name=None):
        super().__init__(name)
        self.map_fn, self.max_concurrency = map_fn, max_concurrency

    async def _run(self, ctx, params):
        if MAP_ITEMS_KEY not in ctx:
            raise ValidationError(f"{type(self).__name__} requires '{MAP_ITEMS_KEY}' in context", field_name=MAP_ITEMS_KEY)
        items = _as_items(ctx[MAP_ITEMS_KEY], type(self).__name__, MAP_ITEMS_KEY)

        async def apply(index, item):
            return await _resolve(self.map_fn(ctx, item))

        ctx[MAP_RESULTS_KEY] = await _run_waves(apply, items, max(self.max_concurrency or 0, 0))
        return DEFAULT_ACTION
