# tests/core/test_chess_utils.py
from repertoire_builder.config.settings import ScoringSettings
from repertoire_builder.core.chess_utils import (average_cpl, calculate_accuracy, calculate_cpl,
                                                 interpret_engine_score, to_white_pov)
from repertoire_builder.types import Color, EngineLine


def test_calculate_cpl():
    assert calculate_cpl(100, 50, Color.WHITE) == 50
    assert calculate_cpl(100, 150, Color.BLACK) == 50
    assert calculate_cpl(100, 150, Color.WHITE) == 0  # No negative CPL
    assert calculate_cpl(None, 150, Color.WHITE) is None


def test_interpret_engine_score():
    settings = ScoringSettings()
    assert interpret_engine_score(EngineLine(rank=1, uci="e2e4", score_cp=100), settings) == 100
    assert interpret_engine_score(EngineLine(rank=1, uci="e2e4", score_cp=None, score_mate=2), settings) > 9000
    assert interpret_engine_score(EngineLine(rank=1, uci="e2e4", score_cp=None, score_mate=-2), settings) < -9000
    assert interpret_engine_score(None, settings) is None


def test_to_white_pov():
    assert to_white_pov(40.0, Color.WHITE) == 40.0
    assert to_white_pov(40.0, Color.BLACK) == -40.0
    assert to_white_pov(None, Color.BLACK) is None


def test_average_cpl_and_accuracy():
    settings = ScoringSettings()
    assert average_cpl([]) is None
    assert average_cpl([10, 20, 31]) == 20.3
    assert calculate_accuracy(0, settings) == 100.0
    assert 0 < calculate_accuracy(50, settings) < calculate_accuracy(20, settings) < 100
    assert calculate_accuracy(None, settings) is None
