# repertoire_builder/orchestration/game_analyzer.py
"""
Analyzes one game from start to finish with a dedicated engine session.

Every position along the game's mainline is evaluated, each move is annotated
with an `[%eval]` comment, and the centipawn loss of every move feeds the
per-side ACPL and accuracy figures. The analysis of one game is strictly
sequential; parallelism across games is the batch coordinator's job.
"""

import asyncio
import time
from typing import Dict, List, Optional

import chess
import chess.engine
import chess.pgn
import structlog

from repertoire_builder.config.settings import ScoringSettings
from repertoire_builder.core import chess_utils
from repertoire_builder.services.pgn_service import PgnService
from repertoire_builder.types import (FEN, Color, GameAnalysisResult, GameEngineSession,
                                      GameRecord, PlayerStats)
from repertoire_builder.utils import metrics

logger = structlog.get_logger(__name__)


class GameAnalyzer:
    """Turns a `GameRecord` into an annotated PGN plus per-side statistics."""

    def __init__(self, scoring: ScoringSettings, pgn_service: Optional[PgnService] = None):
        self._scoring = scoring
        self._pgn_service = pgn_service or PgnService()

    def _white_pov_eval(self, board: chess.Board, lines) -> Optional[float]:
        """Evaluation of `board` from White's point of view, terminal positions included."""
        if board.is_checkmate():
            # The side to move has been mated.
            mated_value = float(self._scoring.mate_score_equivalent_cp)
            return -mated_value if board.turn == chess.WHITE else mated_value
        if board.is_stalemate() or board.is_insufficient_material():
            return 0.0
        if not lines:
            return None
        side = Color.WHITE if board.turn == chess.WHITE else Color.BLACK
        return chess_utils.to_white_pov(chess_utils.interpret_engine_score(lines[0], self._scoring), side)

    @staticmethod
    def _annotate(node: chess.pgn.ChildNode, line) -> None:
        """Attaches the engine score of the position after `node`'s move as an [%eval] comment."""
        if line is None:
            return
        if line.score_mate is not None:
            relative: chess.engine.Score = chess.engine.Mate(line.score_mate)
        elif line.score_cp is not None:
            relative = chess.engine.Cp(line.score_cp)
        else:
            return
        node.set_eval(chess.engine.PovScore(relative, node.board().turn))

    async def analyze(
        self,
        game: GameRecord,
        session: GameEngineSession,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[GameAnalysisResult]:
        """
        Analyzes every mainline position of `game` with `session`.

        Returns:
            The annotated game and its statistics, or None if `cancel_event`
            was set while the engine was working.

        Raises:
            PgnParsingError: If the game's PGN cannot be parsed.
            EngineAnalysisError: If the engine session fails.
        """
        started = time.perf_counter()
        pgn_game = self._pgn_service.parse_game(game.pgn)

        board = pgn_game.board()
        fens: List[FEN] = [board.fen()]
        for move in pgn_game.mainline_moves():
            board.push(move)
            fens.append(board.fen())

        lines_by_fen = await session.analyze_positions(list(dict.fromkeys(fens)))
        if cancel_event is not None and cancel_event.is_set():
            return None

        evals: Dict[FEN, Optional[float]] = {}
        board = pgn_game.board()
        evals[board.fen()] = self._white_pov_eval(board, lines_by_fen.get(board.fen()))

        cpls: Dict[Color, List[int]] = {Color.WHITE: [], Color.BLACK: []}
        for node in pgn_game.mainline():
            parent_fen = node.parent.board().fen()
            mover = Color.WHITE if node.parent.board().turn == chess.WHITE else Color.BLACK
            after_board = node.board()
            after_fen = after_board.fen()
            after_lines = lines_by_fen.get(after_fen)
            evals[after_fen] = self._white_pov_eval(after_board, after_lines)

            self._annotate(node, after_lines[0] if after_lines else None)
            cpl = chess_utils.calculate_cpl(evals.get(parent_fen), evals[after_fen], mover)
            if cpl is not None:
                cpls[mover].append(cpl)

        stats = {}
        for color, values in cpls.items():
            acpl = chess_utils.average_cpl(values)
            stats[color] = PlayerStats(acpl=acpl, accuracy_percent=chess_utils.calculate_accuracy(acpl, self._scoring))

        annotated = pgn_game.accept(chess.pgn.StringExporter(headers=True, variations=True, comments=True))
        duration = time.perf_counter() - started
        metrics.GAME_ANALYSIS_DURATION_SECONDS.observe(duration)
        logger.info(
            "Game analyzed.", game_id=game.game_id, positions=len(lines_by_fen),
            white_acpl=stats[Color.WHITE].acpl, black_acpl=stats[Color.BLACK].acpl,
            duration_s=round(duration, 2),
        )
        return GameAnalysisResult(
            game_id=game.game_id, annotated_pgn=annotated,
            white=stats[Color.WHITE], black=stats[Color.BLACK],
        )
