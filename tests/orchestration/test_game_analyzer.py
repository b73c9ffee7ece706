# tests/orchestration/test_game_analyzer.py
import asyncio

import chess
import pytest

from repertoire_builder.config.settings import ScoringSettings
from repertoire_builder.exceptions import PgnParsingError
from repertoire_builder.orchestration.game_analyzer import GameAnalyzer
from repertoire_builder.types import EngineLine, GameRecord

SCHOLARS_MATE = """
[Event "Casual"]
[White "A"]
[Black "B"]
[Result "1-0"]

1. e4 e5 2. Qh5 Nc6 3. Bc4 Nf6 4. Qxf7# 1-0
"""


def mates_in_one(board, uci):
    move = chess.Move.from_uci(uci)
    if not board.is_legal(move):
        return False
    after = board.copy()
    after.push(move)
    return after.is_checkmate()


class FakeSession:
    """Sees the mate in one after 3...Nf6 and calls everything else +0.20 for the side to move."""

    def __init__(self, cancel_event=None):
        self.requested = []
        self.cancel_event = cancel_event

    async def analyze_positions(self, fens):
        self.requested.append(list(fens))
        if self.cancel_event is not None:
            self.cancel_event.set()
        lines = {}
        for fen in fens:
            board = chess.Board(fen)
            if board.is_checkmate():
                lines[fen] = []
            elif mates_in_one(board, "h5f7"):
                lines[fen] = [EngineLine(rank=1, uci="h5f7", score_cp=None, score_mate=1)]
            else:
                lines[fen] = [EngineLine(rank=1, uci=next(iter(board.legal_moves)).uci(), score_cp=20)]
        return lines

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_blunder_into_mate_is_charged_to_black():
    analyzer = GameAnalyzer(ScoringSettings())
    session = FakeSession()
    result = await analyzer.analyze(GameRecord(game_id="g1", pgn=SCHOLARS_MATE), session)

    assert result.game_id == "g1"
    # Start position plus one position per ply.
    assert len(session.requested[0]) == 8
    assert result.black.acpl > result.white.acpl
    # 40 for each of the first three moves, nothing for the mating move.
    assert result.white.acpl == 30.0
    assert result.white.accuracy_percent > result.black.accuracy_percent
    assert "[%eval" in result.annotated_pgn
    assert "[%eval #1]" in result.annotated_pgn
    assert "Qxf7#" in result.annotated_pgn


@pytest.mark.asyncio
async def test_cancelled_while_analyzing_returns_none():
    cancel = asyncio.Event()
    analyzer = GameAnalyzer(ScoringSettings())
    result = await analyzer.analyze(GameRecord(game_id="g1", pgn=SCHOLARS_MATE), FakeSession(cancel), cancel)
    assert result is None


@pytest.mark.asyncio
async def test_unparseable_game_raises():
    analyzer = GameAnalyzer(ScoringSettings())
    with pytest.raises(PgnParsingError):
        await analyzer.analyze(GameRecord(game_id="bad", pgn="1. e4 Ke7 2. Ke5 *"), FakeSession())
