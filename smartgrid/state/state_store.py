"""
State persistence for the grid engine.

Three JSON documents under state_dir, each written as a full snapshot
(tmp file then rename, last write wins):
    asg_grids.json    gridId -> Grid
    asg_history.json  completed grids, oldest first
    asg_stats.json    ModuleStats

Missing or corrupt documents load as empty state. The engine only sees the
GridRepository protocol, so another store can be dropped in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from smartgrid.core.json_utils import dumps, dumps_bytes, loads
from smartgrid.core.models import Grid, ModuleStats

log = logging.getLogger("smartgrid")

GRIDS_FILE = "asg_grids.json"
HISTORY_FILE = "asg_history.json"
STATS_FILE = "asg_stats.json"


@dataclass
class EngineState:
    """Everything the engine persists."""
    grids: Dict[str, Grid] = field(default_factory=dict)
    history: List[Grid] = field(default_factory=list)
    stats: ModuleStats = field(default_factory=ModuleStats)


class GridRepository(Protocol):
    async def load(self) -> EngineState:
        ...

    async def save(self, state: EngineState) -> None:
        ...


class StateStore:
    """One JSON document on disk."""

    def __init__(self, state_dir: str, filename: str) -> None:
        self.path = Path(state_dir) / filename
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[Any]:
        if not self.path.exists():
            return None
        try:
            return loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log.error(dumps({"event": "state_load_error", "path": str(self.path), "error": str(exc)}))
            return None

    def save(self, data: Any) -> bool:
        try:
            self.tmp.write_bytes(dumps_bytes(data, indent=True))
            self.tmp.replace(self.path)
        except (OSError, TypeError) as exc:
            log.error(dumps({"event": "state_save_error", "path": str(self.path), "error": str(exc)}))
            return False
        return True


def _parse_grid(raw: Any, where: str) -> Optional[Grid]:
    try:
        return Grid.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        log.error(dumps({"event": "state_grid_skipped", "where": where, "error": str(exc)}))
        return None


class FileGridRepository:
    """
    GridRepository over three StateStore documents.

    File IO runs in the default executor behind an asyncio.Lock so saves
    never interleave.
    """

    def __init__(self, state_dir: str) -> None:
        self.state_dir = state_dir
        self._grids = StateStore(state_dir, GRIDS_FILE)
        self._history = StateStore(state_dir, HISTORY_FILE)
        self._stats = StateStore(state_dir, STATS_FILE)
        self._lock = asyncio.Lock()

    def load_sync(self) -> EngineState:
        state = EngineState()

        raw_grids = self._grids.load()
        if isinstance(raw_grids, dict):
            for grid_id, raw in raw_grids.items():
                grid = _parse_grid(raw, GRIDS_FILE)
                if grid is not None:
                    state.grids[grid_id] = grid
        elif raw_grids is not None:
            log.error(dumps({"event": "state_load_error", "path": GRIDS_FILE, "error": "expected an object"}))

        raw_history = self._history.load()
        if isinstance(raw_history, list):
            for raw in raw_history:
                grid = _parse_grid(raw, HISTORY_FILE)
                if grid is not None:
                    state.history.append(grid)
        elif raw_history is not None:
            log.error(dumps({"event": "state_load_error", "path": HISTORY_FILE, "error": "expected an array"}))

        raw_stats = self._stats.load()
        if isinstance(raw_stats, dict):
            try:
                state.stats = ModuleStats.from_dict(raw_stats)
            except (TypeError, ValueError) as exc:
                log.error(dumps({"event": "state_load_error", "path": STATS_FILE, "error": str(exc)}))
        return state

    @staticmethod
    def _documents(state: EngineState) -> Tuple[Dict[str, Any], List[Dict[str, Any]], Dict[str, Any]]:
        return (
            {gid: g.to_dict() for gid, g in state.grids.items()},
            [g.to_dict() for g in state.history],
            state.stats.to_dict(),
        )

    def _write(self, grids: Dict[str, Any], history: List[Dict[str, Any]], stats: Dict[str, Any]) -> bool:
        # Written independently; a crash between them is tolerated on load
        ok = self._grids.save(grids)
        ok = self._history.save(history) and ok
        ok = self._stats.save(stats) and ok
        return ok

    def save_sync(self, state: EngineState) -> bool:
        return self._write(*self._documents(state))

    async def load(self) -> EngineState:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.load_sync)

    async def save(self, state: EngineState) -> None:
        # Serialize on the loop so the snapshot is consistent, write in the executor
        docs = self._documents(state)
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._write(*docs))


class MemoryGridRepository:
    """In-process GridRepository, for tests and dry runs."""

    def __init__(self, state: Optional[EngineState] = None) -> None:
        self._data = self._dump(state or EngineState())
        self.saves = 0

    @staticmethod
    def _dump(state: EngineState) -> Dict[str, Any]:
        return {
            "grids": {gid: g.to_dict() for gid, g in state.grids.items()},
            "history": [g.to_dict() for g in state.history],
            "stats": state.stats.to_dict(),
        }

    async def load(self) -> EngineState:
        return EngineState(
            grids={gid: Grid.from_dict(g) for gid, g in self._data["grids"].items()},
            history=[Grid.from_dict(g) for g in self._data["history"]],
            stats=ModuleStats.from_dict(self._data["stats"]),
        )

    async def save(self, state: EngineState) -> None:
        self._data = self._dump(state)
        self.saves += 1
