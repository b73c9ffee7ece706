# tests/orchestration/orchestration_fakes.py
"""In-memory stand-ins for the engine, opening database and cache storage."""
import asyncio
from typing import Callable, Dict, List, Optional

import chess

from repertoire_builder.core.position_identity import canonicalize
from repertoire_builder.types import CachedRecommendation, EngineLine, OpeningStat


class MemoryRecommendationStore:
    """A dict-backed RecommendationStore."""

    def __init__(self):
        self.rows: Dict[tuple, tuple] = {}

    async def fetch(self, identity, engine_id) -> Optional[CachedRecommendation]:
        row = self.rows.get((identity, engine_id))
        if row is None:
            return None
        return CachedRecommendation(recommended_move=row[0], search_budget_ms=row[1], engine_id=engine_id)

    async def upsert(self, identity, engine_id, move, budget_ms) -> None:
        self.rows[(identity, engine_id)] = (move, budget_ms)


class ScriptedEngine:
    """
    A TreeEngineService whose answers come from a function of the position.

    `script(board)` returns the lines for that position, or raises.
    """

    engine_id = "/engines/scripted"
    engine_name = "Scripted 1.0"

    def __init__(self, script: Callable[[chess.Board], List[EngineLine]]):
        self._script = script
        self.calls: List[str] = []
        self.stopped: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def best_lines(self, fen, min_lines, budget_ms):
        self.calls.append(fen)
        if self.gate is not None:
            await self.gate.wait()
        return self._script(chess.Board(fen))

    async def stop(self, session_id):
        self.stopped.append(session_id)


class ScriptedDatabase:
    """An OpeningDatabase keyed by position identity; unknown positions have no games."""

    def __init__(self, stats_by_identity: Dict[str, List[OpeningStat]]):
        self._stats = stats_by_identity
        self.calls: List[str] = []

    async def stats_for_position(self, fen):
        self.calls.append(fen)
        return list(self._stats.get(canonicalize(fen), []))


def prefer(*ucis: str, scores=(30, -60)) -> Callable[[chess.Board], List[EngineLine]]:
    """A script that ranks the first legal moves from `ucis`."""
    def script(board: chess.Board) -> List[EngineLine]:
        legal = [uci for uci in ucis if chess.Move.from_uci(uci) in board.legal_moves]
        return [EngineLine(rank=i + 1, uci=uci, score_cp=score) for i, (uci, score) in enumerate(zip(legal, scores))]
    return script


def fen_after(*sans: str) -> str:
    board = chess.Board()
    for san in sans:
        board.push_san(san)
    return board.fen()


