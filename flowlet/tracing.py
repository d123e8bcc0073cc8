import contextvars, time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

class TraceEventType(Enum):
    NODE_START = "node_start"
    NODE_PREP = "node_prep"
    NODE_EXEC = "node_exec"
    NODE_POST = "node_post"
    NODE_END = "node_end"
    NODE_ERROR = "node_error"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    BATCH_ITEM = "batch_item"
    TRANSITION = "transition"
    FLOW_START = "flow_start"
    FLOW_END = "flow_end"

# Keys kept on events even when capture_data is off
_LIGHTWEIGHT_KEYS = ('action', 'retry', 'max_retries', 'wait_time', 'error', 'type', 'index',
                     'from_node', 'to_node', 'prep_time', 'exec_time', 'post_time')

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_name: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        data_str = f", data={self.data}" if self.data else ""
        return f"TraceEvent({self.event_type.value}, node={self.node_name}, t={self.timestamp:.4f}{data_str})"

@dataclass
class NodeTiming:
    """Phase durations (seconds) of one node invocation, rebuilt from trace events.

    A phase is None when its event was not recorded, e.g. flows have no exec phase
    of their own and a node that raised never reaches post.
    """
    node_name: str
    prep_time: Optional[float] = None
    exec_time: Optional[float] = None
    post_time: Optional[float] = None
    total_time: Optional[float] = None
    start_timestamp: Optional[float] = None
    end_timestamp: Optional[float] = None

class FlowTracer:
    """Opt-in recorder of what a run actually did.

    Usage:
        tracer = FlowTracer()
        await flow.run(ctx, tracer=tracer)
        tracer.get_execution_order()    # ['Start', 'Double']
        tracer.to_dict()                # serializable report

    The tracer is installed in a ContextVar for the duration of run(), so each
    asyncio task sees the tracer of the run that spawned it.
    """
    def __init__(self, capture_data: bool = False, max_data_size: int = 1000):
        """
        Args:
            capture_data: Also keep prep/exec results (repr, truncated). Off by default.
            max_data_size: Maximum repr length kept per captured value.
        """
        self.events: List[TraceEvent] = []
        self.capture_data = capture_data
        self.max_data_size = max_data_size

    def _truncate(self, data: Any) -> Any:
        if data is None:
            return None
        s = repr(data)
        return s[:self.max_data_size] + "...[truncated]" if len(s) > self.max_data_size else s

    def record(self, event_type: TraceEventType, node_name: str, data: Optional[Dict[str, Any]] = None):
        captured = None
        if data and self.capture_data:
            captured = {k: (v if k in _LIGHTWEIGHT_KEYS else self._truncate(v)) for k, v in data.items()}
        elif data:
            captured = {k: v for k, v in data.items() if k in _LIGHTWEIGHT_KEYS} or None
        self.events.append(TraceEvent(event_type, node_name, time.time(), captured))

    def _of(self, event_type: TraceEventType) -> List[TraceEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def get_execution_order(self) -> List[str]:
        return [e.node_name for e in self._of(TraceEventType.NODE_START)]

    def get_transitions(self) -> List[Dict[str, str]]:
        return [{"from": e.data.get("from_node"), "to": e.data.get("to_node"), "action": e.data.get("action")}
                for e in self._of(TraceEventType.TRANSITION) if e.data]

    def get_retries(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, **e.data} for e in self._of(TraceEventType.RETRY_ATTEMPT) if e.data]

    def get_errors(self) -> List[Dict[str, Any]]:
        return [{"node": e.node_name, **(e.data or {})} for e in self._of(TraceEventType.NODE_ERROR)]

    def get_duration(self) -> float:
        return self.events[-1].timestamp - self.events[0].timestamp if self.events else 0.0

    def get_node_timings(self) -> List[NodeTiming]:
        """Pair NODE_START/NODE_END events per node name and collect phase times in between.

        Invocations of the same name nest (a flow re-entering a node inside a loop body),
        so open invocations are kept as a stack per name.
        """
        timings: List[NodeTiming] = []
        open_runs: Dict[str, List[NodeTiming]] = {}
        phase_keys = {TraceEventType.NODE_PREP: "prep_time", TraceEventType.NODE_EXEC: "exec_time",
                      TraceEventType.NODE_POST: "post_time"}
        for event in self.events:
            stack = open_runs.setdefault(event.node_name, [])
            if event.event_type == TraceEventType.NODE_START:
                stack.append(NodeTiming(event.node_name, start_timestamp=event.timestamp))
            elif event.event_type in phase_keys and stack:
                key = phase_keys[event.event_type]
                if event.data and key in event.data:
                    setattr(stack[-1], key, event.data[key])
            elif event.event_type in (TraceEventType.NODE_END, TraceEventType.NODE_ERROR) and stack:
                timing = stack.pop()
                timing.end_timestamp = event.timestamp
                timing.total_time = timing.end_timestamp - timing.start_timestamp
                timings.append(timing)
        return timings

    def get_slowest_node(self, phase: str = 'total') -> Optional[NodeTiming]:
        if phase not in ('total', 'prep', 'exec', 'post'):
            raise ValueError(f"phase must be one of total, prep, exec, post; got '{phase}'")
        timings = self.get_node_timings()
        if not timings:
            return None
        return max(timings, key=lambda t: getattr(t, f"{phase}_time") or 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "errors": self.get_errors(),
            "node_timings": [
                {"node_name": t.node_name, "prep_time": t.prep_time, "exec_time": t.exec_time,
                 "post_time": t.post_time, "total_time": t.total_time}
                for t in self.get_node_timings()
            ],
            "events": [
                {"type": e.event_type.value, "node": e.node_name, "timestamp": e.timestamp, "data": e.data}
                for e in self.events
            ],
        }

    def clear(self):
        self.events.clear()


# Context variable for async-safe tracer access (isolated per asyncio task)
_current_tracer: contextvars.ContextVar[Optional[FlowTracer]] = contextvars.ContextVar('_current_tracer', default=None)

def _get_current_tracer() -> Optional[FlowTracer]:
    return _current_tracer.get()

def _set_current_tracer(tracer: Optional[FlowTracer]) -> contextvars.Token:
    return _current_tracer.set(tracer)

def _reset_current_tracer(token: contextvars.Token):
    _current_tracer.reset(token)

def _get_node_name(node) -> str:
    return getattr(node, 'name', None) or node.__class__.__name__
