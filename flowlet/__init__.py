from .advanced import (
    LOOP_INDEX_KEY, LOOP_ITEM_KEY, LOOP_ITERATIONS_KEY, LOOP_RESULT_KEY, LOOP_RESULTS_KEY, MAP_ITEMS_KEY, MAP_RESULTS_KEY,
    ConditionalNode, LoopNode, MapNode, TimeoutNode,
)
from .context import Context
from .core import DEFAULT_ACTION, BaseNode, BatchFlow, BatchNode, Flow, Node, ParallelBatchFlow, ParallelBatchNode
from .errors import (
    CacheError, FallbackError, FlowletError, FlowTimeoutError, LLMError, NodeExecutionError, PersistenceError,
    RAGError, RateLimitError, ValidationError,
)
from .tracing import FlowTracer, NodeTiming, TraceEvent, TraceEventType

__all__ = [
    "Context", "DEFAULT_ACTION",
    "BaseNode", "Node", "BatchNode", "ParallelBatchNode", "Flow", "BatchFlow", "ParallelBatchFlow",
    "ConditionalNode", "LoopNode", "TimeoutNode", "MapNode",
    "LOOP_ITEM_KEY", "LOOP_INDEX_KEY", "LOOP_RESULT_KEY", "LOOP_RESULTS_KEY", "LOOP_ITERATIONS_KEY",
    "MAP_ITEMS_KEY", "MAP_RESULTS_KEY",
    "FlowletError", "NodeExecutionError", "FallbackError", "ValidationError", "FlowTimeoutError",
    "LLMError", "RateLimitError", "CacheError", "RAGError", "PersistenceError",
    "FlowTracer", "TraceEvent", "TraceEventType", "NodeTiming",
]
