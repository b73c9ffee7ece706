# repertoire_builder/core/move_selection.py
"""
Provides pure, stateless functions that decide which moves deserve a branch.

These are the numeric rules behind the two move selection policies: greedy
coverage of the opponent's most played replies, win-rate ranking for the
repertoire owner's own moves, and the near-equal tie-break between the
engine's two best lines. Nothing here performs I/O.
"""

import re
from typing import Final, List, Optional, Sequence, Tuple

from repertoire_builder.types import Color, EngineLine, OpeningStat

_TRAILING_GLYPHS: Final = re.compile(r"[!?]+$")


def normalize_db_move(move: str) -> str:
    """
    Cleans up a move string as returned by a game database.

    Zero-style castling ("0-0", "0-0-0") is rewritten to SAN and trailing
    annotation glyphs such as "!?" are stripped.
    """
    trimmed = move.strip()
    if not trimmed:
        return trimmed
    if trimmed == "0-0-0":
        trimmed = "O-O-O"
    elif trimmed == "0-0":
        trimmed = "O-O"
    return _TRAILING_GLYPHS.sub("", trimmed)


def select_coverage_moves(
    stats: Sequence[OpeningStat], coverage_percent: float, min_moves: int
) -> List[OpeningStat]:
    """
    Greedily picks the most played moves until they cover enough games.

    Moves are taken in descending order of total games (ties keep input order)
    until the cumulative share reaches `coverage_percent` and at least
    `min_moves` moves are selected. If coverage is reached first, the next most
    frequent moves are added until the minimum count is met.

    Args:
        stats: Per-move statistics for one position.
        coverage_percent: Target share of games, clamped to [0, 100].
        min_moves: Minimum number of moves to select, at least 1.

    Returns:
        The selected statistics, most played first. Empty when the position has
        no recorded games.
    """
    total = sum(stat.total for stat in stats)
    if total <= 0:
        return []

    ordered = sorted(stats, key=lambda stat: stat.total, reverse=True)
    target_coverage = max(0.0, min(100.0, coverage_percent))
    target_min = max(1, int(min_moves))

    selected: List[OpeningStat] = []
    cumulative = 0.0
    for stat in ordered:
        if stat.total <= 0:
            continue
        cumulative += stat.total / total * 100
        selected.append(stat)
        if cumulative >= target_coverage and len(selected) >= target_min:
            break

    if len(selected) < target_min:
        for stat in ordered:
            if stat.total <= 0 or stat in selected:
                continue
            selected.append(stat)
            if len(selected) >= target_min:
                break
    return selected


def rank_by_win_rate(stats: Sequence[OpeningStat], mover: Color) -> List[Tuple[str, float]]:
    """
    Ranks moves by the mover's empirical score, best first.

    The score is (wins for the mover + 0.5 * draws) / total games. Moves with
    no recorded games are dropped.
    """
    ranked: List[Tuple[str, float]] = []
    for stat in stats:
        if stat.total <= 0:
            continue
        wins = stat.white_wins if mover is Color.WHITE else stat.black_wins
        ranked.append((stat.move, (wins + stat.draws * 0.5) / stat.total))
    ranked.sort(key=lambda item: item[1], reverse=True)
    return ranked


def second_line_is_near_equal(lines: Sequence[EngineLine], tie_break_cp: int) -> Optional[EngineLine]:
    """
    Returns the second engine line when it is practically as good as the first.

    Scores are from the side to move's point of view, so the gap is simply
    first minus second. The second line qualifies when both scores are defined
    and 0 <= gap <= `tie_break_cp`.
    """
    if len(lines) < 2:
        return None
    first, second = lines[0], lines[1]
    if first.score_cp is None or second.score_cp is None:
        return None
    diff = first.score_cp - second.score_cp
    if 0 <= diff <= tie_break_cp:
        return second
    return None
