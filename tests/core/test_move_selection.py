# tests/core/test_move_selection.py
import pytest

from repertoire_builder.core.move_selection import (normalize_db_move, rank_by_win_rate,
                                                    second_line_is_near_equal, select_coverage_moves)
from repertoire_builder.types import Color, EngineLine, OpeningStat


def stat(move, white, black=0, draws=0):
    return OpeningStat(move=move, white_wins=white, black_wins=black, draws=draws)


def test_coverage_adds_moves_until_threshold():
    stats = [stat("e4", 100), stat("d4", 40), stat("c4", 10)]
    selected = select_coverage_moves(stats, coverage_percent=80, min_moves=1)
    assert [s.move for s in selected] == ["e4", "d4"]


def test_coverage_tops_up_to_minimum():
    stats = [stat("e4", 100), stat("d4", 40), stat("c4", 10)]
    selected = select_coverage_moves(stats, coverage_percent=10, min_moves=3)
    assert [s.move for s in selected] == ["e4", "d4", "c4"]


def test_coverage_sorts_by_total_and_skips_empty_moves():
    stats = [stat("a3", 0), stat("c4", 5, 5), stat("e4", 50, 30, 20)]
    selected = select_coverage_moves(stats, coverage_percent=100, min_moves=5)
    assert [s.move for s in selected] == ["e4", "c4"]


@pytest.mark.parametrize("coverage, min_moves", [(250, 1), (-5, 0)])
def test_coverage_clamps_inputs(coverage, min_moves):
    stats = [stat("e4", 60), stat("d4", 40)]
    selected = select_coverage_moves(stats, coverage_percent=coverage, min_moves=min_moves)
    assert len(selected) == (2 if coverage > 100 else 1)


def test_coverage_with_no_games_is_empty():
    assert select_coverage_moves([stat("e4", 0)], 80, 1) == []
    assert select_coverage_moves([], 80, 1) == []


def test_win_rate_ranking_uses_mover_perspective():
    stats = [stat("e4", white=50, black=40, draws=10), stat("d4", white=30, black=10, draws=60)]
    white_rank = rank_by_win_rate(stats, Color.WHITE)
    black_rank = rank_by_win_rate(stats, Color.BLACK)
    assert white_rank[0] == ("d4", pytest.approx(0.6))
    assert black_rank[0] == ("e4", pytest.approx(0.45))


def test_normalize_db_move():
    assert normalize_db_move("0-0") == "O-O"
    assert normalize_db_move("0-0-0") == "O-O-O"
    assert normalize_db_move(" Nf3!? ") == "Nf3"
    assert normalize_db_move("e4") == "e4"
    assert normalize_db_move("   ") == ""


def test_second_line_within_threshold_is_near_equal():
    lines = [EngineLine(1, "e2e4", 30), EngineLine(2, "d2d4", 15)]
    assert second_line_is_near_equal(lines, tie_break_cp=20) == lines[1]
    assert second_line_is_near_equal(lines, tie_break_cp=10) is None


def test_second_line_requires_defined_scores():
    mate_first = [EngineLine(1, "d1h5", None, 2), EngineLine(2, "e2e4", 30)]
    assert second_line_is_near_equal(mate_first, tie_break_cp=20) is None
    assert second_line_is_near_equal([EngineLine(1, "e2e4", 30)], tie_break_cp=20) is None


def test_second_line_scoring_higher_is_not_near_equal():
    lines = [EngineLine(1, "e2e4", 10), EngineLine(2, "d2d4", 25)]
    assert second_line_is_near_equal(lines, tie_break_cp=20) is None
