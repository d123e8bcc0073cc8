import asyncio, inspect, time, warnings
from collections.abc import Mapping, Sequence
from types import MappingProxyType

import structlog

from .context import Context
from .errors import FallbackError, NodeExecutionError, ValidationError
from .tracing import TraceEventType, _get_current_tracer, _get_node_name, _reset_current_tracer, _set_current_tracer

logger = structlog.get_logger(__name__)

DEFAULT_ACTION = "default"

async def _resolve(value):
    """Await callback results that are awaitable; pass plain values through."""
    return await value if inspect.isawaitable(value) else value

def _merge(*layers):
    """Read-only params snapshot; later layers override earlier ones."""
    merged = {}
    for layer in layers:
        if layer: merged.update(layer)
    return MappingProxyType(merged)

def _as_items(value, owner, what="prep"):
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ValidationError(f"{owner} {what} must be a sequence, got {type(value).__name__}", field_name=what, invalid_value=repr(value)[:200])
    return list(value)

async def _run_waves(fn, items, max_concurrency=0):
    """Call ``fn(index, item)`` for every item in waves of at most ``max_concurrency``.

    0/None means a single wave holding every item. A wave is fully settled before the
    next one starts, results keep input order, and the first failure in input order is
    raised only after its whole wave has settled.
    """
    size = max_concurrency if max_concurrency and max_concurrency > 0 else max(len(items), 1)
    results = []
    for start in range(0, len(items), size):
        wave = await asyncio.gather(*(fn(i, item) for i, item in enumerate(items[start:start + size], start)), return_exceptions=True)
        for r in wave:
            if isinstance(r, BaseException): raise r
        results.extend(wave)
    return results

class BaseNode:
    def __init__(self, name=None): self.params, self.successors, self.name = {}, {}, name
    def set_params(self, params): self.params = dict(params or {}); return self
    def add_successor(self, action, node):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action] = node; return self
    def next(self, node, action=DEFAULT_ACTION): self.add_successor(action, node); return node
    def then(self, node): return self.next(node)
    def on(self, action):
        if isinstance(action, str): return _ActionBinder(self, action)
        raise TypeError("Action must be a string")
    def get_successor(self, action):
        nxt = self.successors.get(action or DEFAULT_ACTION)
        return nxt if nxt is not None else self.successors.get(DEFAULT_ACTION)
    async def _run(self, ctx, params): raise NotImplementedError
    async def _invoke(self, ctx, inherited=None):
        # Effective params: the node's own, overridden by whatever the caller scoped in
        tracer = _get_current_tracer()
        name = _get_node_name(self) if tracer else None
        if tracer: tracer.record(TraceEventType.NODE_START, name)
        try: action = await self._run(ctx, _merge(self.params, inherited))
        except Exception as e:
            if tracer: tracer.record(TraceEventType.NODE_ERROR, name, {"error": str(e), "type": type(e).__name__})
            raise
        if tracer: tracer.record(TraceEventType.NODE_END, name, {"action": action})
        return action
    async def run(self, ctx=None, params=None, tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        token = _set_current_tracer(tracer) if tracer else None
        try: return await self._invoke(Context() if ctx is None else ctx, params)
        finally:
            if token is not None: _reset_current_tracer(token)
    def __rshift__(self, other): return self.then(other)
    def __sub__(self, action): return self.on(action)

class _ActionBinder:
    def __init__(self, src, action): self.src, self.action = src, action
    def then(self, tgt): self.src.add_successor(self.action, tgt); return self.src
    def __rshift__(self, tgt): return self.then(tgt)

class Node(BaseNode):
    def __init__(self, prep=None, exec=None, post=None, fallback=None, max_retries=1, wait=0, exponential_backoff=False, max_wait=None, name=None):
        super().__init__(name)
        self.prep_fn, self.exec_fn, self.post_fn, self.fallback_fn = prep, exec, post, fallback
        self.max_retries, self.wait, self.exponential_backoff, self.max_wait = max(1, max_retries), wait, exponential_backoff, max_wait
        self.cur_retry = 0
    async def prep(self, ctx, params): return await _resolve(self.prep_fn(ctx, params)) if self.prep_fn else None
    async def exec(self, ctx, params, prep_res): return await _resolve(self.exec_fn(ctx, params, prep_res)) if self.exec_fn else None
    async def post(self, ctx, params, prep_res, exec_res): return await _resolve(self.post_fn(ctx, params, prep_res, exec_res)) if self.post_fn else None
    async def exec_fallback(self, ctx, params, prep_res, exc): return await _resolve(self.fallback_fn(ctx, params, prep_res, exc))
    def has_fallback(self): return self.fallback_fn is not None or type(self).exec_fallback is not Node.exec_fallback
    def _get_wait_time(self, attempt):
        if self.wait <= 0: return 0
        w = self.wait * (2 ** attempt) if self.exponential_backoff else self.wait
        return min(w, self.max_wait) if self.max_wait is not None else w
    async def _exec_with_retry(self, ctx, params, prep_res, track=True):
        # track=False keeps concurrent batch items from sharing self.cur_retry
        tracer, name = _get_current_tracer(), _get_node_name(self)
        for i in range(self.max_retries):
            if track: self.cur_retry = i
            if tracer and self.max_retries > 1: tracer.record(TraceEventType.RETRY_ATTEMPT, name, {"retry": i + 1, "max_retries": self.max_retries})
            try: return await _resolve(self.exec(ctx, params, prep_res))
            except Exception as e:
                if i == self.max_retries - 1: return await self._on_exhausted(ctx, params, prep_res, e)
                w = self._get_wait_time(i)
                logger.warning("node_exec_retry", node=name, attempt=i + 1, max_retries=self.max_retries, wait=w, error=str(e))
                if tracer: tracer.record(TraceEventType.RETRY_WAIT, name, {"wait_time": w, "error": str(e)})
                if w > 0: await asyncio.sleep(w)
    async def _on_exhausted(self, ctx, params, prep_res, exc):
        name = _get_node_name(self)
        if not self.has_fallback():
            logger.error("node_exec_failed", node=name, attempts=self.max_retries, error=str(exc))
            raise NodeExecutionError(f"Exec failed after {self.max_retries} retries: {exc}", node_name=name, attempts=self.max_retries) from exc
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.FALLBACK, name, {"error": str(exc)})
        try: return await _resolve(self.exec_fallback(ctx, params, prep_res, exc))
        except Exception as fe:
            raise FallbackError(f"Exec fallback failed: {fe}", node_name=name, attempts=self.max_retries) from fe
    async def _exec(self, ctx, params, prep_res): return await self._exec_with_retry(ctx, params, prep_res)
    async def _run(self, ctx, params):
        tracer = _get_current_tracer()
        name = _get_node_name(self) if tracer else None
        t = time.perf_counter(); p = await _resolve(self.prep(ctx, params))
        if tracer: tracer.record(TraceEventType.NODE_PREP, name, {"prep_time": time.perf_counter() - t, "prep_result": p})
        t = time.perf_counter(); e = await self._exec(ctx, params, p)
        if tracer: tracer.record(TraceEventType.NODE_EXEC, name, {"exec_time": time.perf_counter() - t, "exec_result": e})
        t = time.perf_counter(); action = await _resolve(self.post(ctx, params, p, e)) or DEFAULT_ACTION
        if tracer: tracer.record(TraceEventType.NODE_POST, name, {"post_time": time.perf_counter() - t, "action": action})
        return action

class BatchNode(Node):
    async def prep(self, ctx, params): return await _resolve(self.prep_fn(ctx, params)) if self.prep_fn else []
    async def exec(self, ctx, params, item): return await _resolve(self.exec_fn(ctx, params, item)) if self.exec_fn else item
    async def _exec_item(self, ctx, params, index, item, track=True):
        tracer = _get_current_tracer()
        if tracer: tracer.record(TraceEventType.BATCH_ITEM, _get_node_name(self), {"index": index})
        return await self._exec_with_retry(ctx, params, item, track)
    async def _exec(self, ctx, params, items):
        return [await self._exec_item(ctx, params, i, item) for i, item in enumerate(_as_items(items, type(self).__name__))]

class ParallelBatchNode(BatchNode):
    def __init__(self, *args, max_concurrency=0, **kwargs): super().__init__(*args, **kwargs); self.max_concurrency = max_concurrency or 0
    async def _exec(self, ctx, params, items):
        return await _run_waves(lambda i, item: self._exec_item(ctx, params, i, item, track=False), _as_items(items, type(self).__name__), self.max_concurrency)

class Flow(BaseNode):
    def __init__(self, start=None, prep=None, post=None, name=None): super().__init__(name); self.start_node, self.prep_fn, self.post_fn = start, prep, post
    def start(self, start): self.start_node = start; return start
    async def prep(self, ctx, params): return await _resolve(self.prep_fn(ctx, params)) if self.prep_fn else None
    async def post(self, ctx, params, prep_res, exec_res): return await _resolve(self.post_fn(ctx, params, prep_res, exec_res)) if self.post_fn else exec_res
    def get_next_node(self, curr, action):
        nxt = curr.get_successor(action)
        if nxt is None and curr.successors: warnings.warn(f"Flow ends: '{action}' not found in {list(curr.successors)}")
        return nxt
    async def _orch(self, ctx, params):
        if self.start_node is None: raise ValidationError(f"Flow '{_get_node_name(self)}' has no start node", field_name="start_node")
        tracer = _get_current_tracer()
        flow_name = _get_node_name(self) if tracer else None
        curr, last_action = self.start_node, None
        while curr is not None:
            last_action = await curr._invoke(ctx, params)
            nxt = self.get_next_node(curr, last_action)
            if tracer and nxt is not None:
                tracer.record(TraceEventType.TRANSITION, flow_name, {"from_node": _get_node_name(curr), "to_node": _get_node_name(nxt), "action": last_action})
            curr = nxt
        return last_action
    async def _run(self, ctx, params):
        p = await _resolve(self.prep(ctx, params))
        o = await self._orch(ctx, params)
        return await _resolve(self.post(ctx, params, p, o)) or DEFAULT_ACTION
    async def run(self, ctx=None, params=None, tracer=None):
        if self.successors: warnings.warn("Flow won't run its own successors. Nest it in an outer Flow.")
        token = _set_current_tracer(tracer) if tracer else None
        tracer, flow_name = _get_current_tracer(), _get_node_name(self)
        try:
            if tracer: tracer.record(TraceEventType.FLOW_START, flow_name)
            action = await self._run(Context() if ctx is None else ctx, _merge(self.params, params))
            if tracer: tracer.record(TraceEventType.FLOW_END, flow_name, {"action": action})
            return action
        finally:
            if token is not None: _reset_current_tracer(token)

class BatchFlow(Flow):
    async def prep(self, ctx, params): return await _resolve(self.prep_fn(ctx, params)) if self.prep_fn else []
    async def post(self, ctx, params, param_sets, actions): return await _resolve(self.post_fn(ctx, params, param_sets, actions)) if self.post_fn else None
    def _param_sets(self, pr):
        sets = _as_items(pr, type(self).__name__)
        for bp in sets:
            if not isinstance(bp, Mapping): raise ValidationError(f"{type(self).__name__} prep must yield parameter mappings, got {type(bp).__name__}", field_name="prep", invalid_value=repr(bp)[:200])
        return sets
    async def _sub_run(self, ctx, params, param_set): return await self._orch(ctx, _merge(params, param_set))
    async def _run(self, ctx, params):
        pr = await _resolve(self.prep(ctx, params))
        actions = [await self._sub_run(ctx, params, bp) for bp in self._param_sets(pr)]
        return await _resolve(self.post(ctx, params, pr, actions)) or DEFAULT_ACTION

class ParallelBatchFlow(BatchFlow):
    def __init__(self, start=None, prep=None, post=None, name=None, max_concurrency=0): super().__init__(start, prep, post, name); self.max_concurrency = max_concurrency or 0
    async def _run(self, ctx, params):
        pr = await _resolve(self.prep(ctx, params))
        actions = await _run_waves(lambda i, bp: self._sub_run(ctx, params, bp), self._param_sets(pr), self.max_concurrency)
        return await _resolve(self.post(ctx, params, pr, actions)) or DEFAULT_ACTION
