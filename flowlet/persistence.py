"""Checkpointing of Context data to JSON files.

A snapshot is written as ``<flow_id>_<unix_ms>.json`` under the store directory;
loading a flow returns its most recent snapshot. A save that would reuse an
existing file name moves the stamp forward one millisecond at a time instead of
overwriting it.
"""
import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from .context import Context
from .errors import PersistenceError

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowState(BaseModel):
    """Serializable snapshot of a flow's shared Context."""

    flow_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    context_data: Dict[str, Any] = Field(default_factory=dict)
    current_node_index: int = 0
    completed_nodes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def unix_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)


def capture_state(ctx: Context, flow_id: str, metadata: Optional[Dict[str, Any]] = None) -> FlowState:
    """Snapshot ``ctx``; later mutations of the Context do not leak into the snapshot."""
    return FlowState(flow_id=flow_id, context_data=copy.deepcopy(ctx.to_dict()), metadata=dict(metadata or {}))


def restore_context(ctx: Context, state: FlowState) -> None:
    """Write every snapshot key back into ``ctx``, overwriting existing values."""
    for key, value in copy.deepcopy(state.context_data).items():
        ctx[key] = value


class StateStore:
    def __init__(self, storage_dir: str = ".flowlet_state"):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _snapshots(self, flow_id: Optional[str] = None) -> List[Tuple[str, int, Path]]:
        found = []
        for path in self.storage_dir.glob("*.json"):
            fid, sep, stamp = path.stem.rpartition("_")
            if not sep or not stamp.isdigit():
                continue
            if flow_id is None or fid == flow_id:
                found.append((fid, int(stamp), path))
        return sorted(found, key=lambda s: (s[0], s[1]))

    def save_state(self, state: FlowState) -> Path:
        try:
            payload = state.model_dump_json(indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"State for flow '{state.flow_id}' is not JSON serializable: {e}") from e
        stamp = state.unix_ms
        path = self.storage_dir / f"{state.flow_id}_{stamp}.json"
        while path.exists():
            stamp += 1
            path = self.storage_dir / f"{state.flow_id}_{stamp}.json"
        path.write_text(payload, encoding="utf-8")
        logger.info("flow_state_saved", flow_id=state.flow_id, path=str(path))
        return path

    def load_state(self, flow_id: str) -> FlowState:
        snapshots = self._snapshots(flow_id)
        if not snapshots:
            raise PersistenceError(f"No state found for flow: {flow_id}")
        path = snapshots[-1][2]
        try:
            return FlowState.model_validate_json(path.read_text(encoding="utf-8"))
        except PydanticValidationError as e:
            raise PersistenceError(f"Corrupt state file {path}: {e}") from e

    def delete_state(self, flow_id: str) -> int:
        snapshots = self._snapshots(flow_id)
        for _, _, path in snapshots:
            path.unlink()
        logger.info("flow_state_deleted", flow_id=flow_id, files=len(snapshots))
        return len(snapshots)

    def list_states(self) -> List[Tuple[str, datetime]]:
        return [
            (fid, datetime.fromtimestamp(stamp / 1000, tz=timezone.utc))
            for fid, stamp, _ in self._snapshots()
        ]
