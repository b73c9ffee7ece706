# repertoire_builder/services/stockfish_service.py
"""
A depth-limited Stockfish session for whole-game analysis.

Batch analysis gives every game its own engine process, searched to a fixed
depth with a single search thread so that several games can run side by side.
This adapter wraps the synchronous `python-stockfish` library and runs its
blocking calls in worker threads via `asyncio.to_thread`.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TYPE_CHECKING

import chess
from stockfish import Stockfish, StockfishException

from repertoire_builder.exceptions import EngineAnalysisError, EngineInitializationError
from repertoire_builder.types import FEN, EngineLine

if TYPE_CHECKING:
    from repertoire_builder.config.settings import EngineSettings


class StockfishService:
    """
    A `GameEngineSession` that owns one Stockfish subprocess.

    Use the `create` class method for safe instantiation.
    """

    def __init__(self, stockfish_instance: Stockfish, multipv: int):
        self._stockfish: Optional[Stockfish] = stockfish_instance
        self._multipv = multipv
        self._lock = asyncio.Lock()  # Protects access to the single stockfish instance
        self._is_closed = False

    @classmethod
    def _create_sync(cls, settings: "EngineSettings") -> "StockfishService":
        """Finds and starts the Stockfish subprocess; blocking, run in a thread."""
        stockfish_path = Path(settings.path)
        if not stockfish_path.is_file():
            raise EngineInitializationError(f"Stockfish executable not found at {stockfish_path}")

        try:
            stockfish = Stockfish(
                path=str(stockfish_path.resolve()),
                depth=settings.depth,
                parameters=settings.parameters,
            )
            if not stockfish.is_fen_valid(chess.STARTING_FEN):
                raise EngineInitializationError("Stockfish process started but FEN validation failed.")
        except StockfishException as e:
            raise EngineInitializationError(f"Failed to initialize Stockfish: {e}") from e
        return cls(stockfish, int(settings.parameters.get("MultiPV", 1)))

    @classmethod
    async def create(cls, settings: "EngineSettings") -> "StockfishService":
        """Asynchronously creates and initializes a StockfishService instance."""
        return await asyncio.to_thread(cls._create_sync, settings)

    def _ensure_engine_ready(self) -> Stockfish:
        if self._is_closed or self._stockfish is None:
            raise EngineAnalysisError("Stockfish session is closed or the engine has failed.", engine=self)
        return self._stockfish

    @staticmethod
    def _to_lines(fen: FEN, top_moves: List[Dict]) -> List[EngineLine]:
        """
        Converts python-stockfish output into EngineLines.

        The library reports scores from White's point of view; EngineLines are
        from the side to move's, so Black-to-move scores are negated.
        """
        sign = 1 if fen.split()[1] == "w" else -1
        lines = []
        for rank, move in enumerate(top_moves, start=1):
            if not move.get("Move"):
                continue
            centipawn = move.get("Centipawn")
            mate = move.get("Mate")
            lines.append(
                EngineLine(
                    rank=rank,
                    uci=move["Move"],
                    score_cp=sign * centipawn if centipawn is not None else None,
                    score_mate=sign * mate if mate is not None else None,
                )
            )
        return lines

    def _analyze_sync(self, fens: Sequence[FEN]) -> Dict[FEN, List[EngineLine]]:
        stockfish = self._ensure_engine_ready()
        results: Dict[FEN, List[EngineLine]] = {}
        try:
            for fen in fens:
                stockfish.set_fen_position(fen)
                results[fen] = self._to_lines(fen, stockfish.get_top_moves(self._multipv))
        except StockfishException as e:
            self._stockfish = None
            raise EngineAnalysisError("Stockfish process crashed during analysis.", engine=self) from e
        return results

    async def analyze_positions(self, fens: Sequence[FEN]) -> Dict[FEN, List[EngineLine]]:
        """
        Analyzes each FEN to the configured depth, one position after another.

        Raises:
            EngineAnalysisError: If the session was closed or the engine crashed.
        """
        async with self._lock:
            return await asyncio.to_thread(self._analyze_sync, list(fens))

    def _close_sync(self) -> None:
        if self._stockfish is not None:
            # No-op if the process has already exited.
            self._stockfish.send_quit_command()
        self._stockfish = None

    async def close(self) -> None:
        """Terminates the Stockfish subprocess. Safe to call repeatedly."""
        if self._is_closed:
            return
        self._is_closed = True
        await asyncio.to_thread(self._close_sync)
