# repertoire_builder/core/position_service.py
"""
A `PositionService` adapter over python-chess.

The tree builder never touches board objects directly; it asks this service
about FEN strings. Every method is pure and rebuilds a `chess.Board` from the
FEN it is given.
"""

from typing import List, Optional

import chess

from repertoire_builder.exceptions import InvalidPositionError
from repertoire_builder.types import FEN, SAN, UCI, Color


class ChessPositionService:
    """Stateless chess rules adapter backed by `chess.Board`."""

    def __init__(self, chess960: bool = False):
        self._chess960 = chess960

    def _board(self, fen: FEN) -> chess.Board:
        try:
            return chess.Board(fen.strip(), chess960=self._chess960)
        except ValueError as e:
            raise InvalidPositionError(f"Invalid FEN '{fen}': {e}") from e

    def _legal_move(self, board: chess.Board, move: UCI) -> chess.Move:
        try:
            parsed = chess.Move.from_uci(move)
        except ValueError as e:
            raise InvalidPositionError(f"Malformed UCI move '{move}'.") from e
        if parsed not in board.legal_moves:
            raise InvalidPositionError(f"Illegal move '{move}' in position '{board.fen()}'.")
        return parsed

    def is_valid(self, fen: FEN) -> bool:
        """Returns True when the FEN parses and describes a legal setup."""
        try:
            board = self._board(fen)
        except InvalidPositionError:
            return False
        return board.is_valid()

    def legal_moves(self, fen: FEN) -> List[UCI]:
        return [move.uci() for move in self._board(fen).legal_moves]

    def apply(self, fen: FEN, move: UCI) -> FEN:
        board = self._board(fen)
        board.push(self._legal_move(board, move))
        return board.fen()

    def side_to_move(self, fen: FEN) -> Color:
        return Color.WHITE if self._board(fen).turn == chess.WHITE else Color.BLACK

    def to_san(self, fen: FEN, move: UCI) -> SAN:
        board = self._board(fen)
        return board.san(self._legal_move(board, move))

    def parse_move(self, fen: FEN, text: str) -> Optional[UCI]:
        """
        Resolves a move written in SAN or UCI to a legal UCI move.

        Returns:
            The UCI string, or None when the text is not a legal move here.
        """
        board = self._board(fen)
        candidate = text.strip()
        if not candidate:
            return None
        try:
            san_move = board.parse_san(candidate)
            # parse_san accepts "--" as a null move, which is never a real continuation.
            return san_move.uci() if san_move else None
        except ValueError:
            pass
        try:
            move = chess.Move.from_uci(candidate)
        except ValueError:
            return None
        return move.uci() if move in board.legal_moves else None

    def is_game_over(self, fen: FEN) -> bool:
        return self._board(fen).is_game_over(claim_draw=False)
