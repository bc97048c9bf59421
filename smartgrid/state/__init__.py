"""
Persistence of active grids, history and module stats.
"""

from smartgrid.state.state_store import EngineState, FileGridRepository, GridRepository, MemoryGridRepository

__all__ = ["EngineState", "GridRepository", "FileGridRepository", "MemoryGridRepository"]
