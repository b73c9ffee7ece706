# repertoire_builder/core/chess_utils.py
"""
Provides pure, stateless functions for scoring analyzed games.

Engine lines arrive scored from the side to move's point of view; game
statistics are computed from White's point of view. The helpers here convert
between the two, collapse mate scores into large centipawn values, and turn
per-move centipawn loss into the accuracy figure saved for each analyzed game.
"""

import math
from typing import Final, List, Optional, TYPE_CHECKING

from repertoire_builder.types import Color, EngineLine

if TYPE_CHECKING:
    from repertoire_builder.config.settings import ScoringSettings

# A constant used to scale down mate scores to be comparable with centipawn scores.
MATE_ADJUSTMENT_FACTOR: Final[int] = 10


def interpret_engine_score(
    line: Optional[EngineLine], settings: "ScoringSettings"
) -> Optional[float]:
    """
    Parses an EngineLine into a centipawn score for the side to move.
    """
    if not line:
        return None

    if line.score_mate is not None:
        sign = 1 if line.score_mate > 0 else -1
        base_score = float(
            settings.mate_score_equivalent_cp - (abs(line.score_mate) * MATE_ADJUSTMENT_FACTOR)
        )
        return sign * base_score
    elif line.score_cp is not None:
        return float(line.score_cp)

    return None


def to_white_pov(score: Optional[float], side_to_move: Color) -> Optional[float]:
    """Flips a side-to-move score so that positive always favours White."""
    if score is None:
        return None
    return score if side_to_move is Color.WHITE else -score


def calculate_cpl(
    eval_before: Optional[float],
    eval_after: Optional[float],
    player_color: Color
) -> Optional[int]:
    """
    Calculates Centipawn Loss (CPL) from the perspective of the active player.

    Both evaluations are from White's point of view.
    """
    if eval_before is None or eval_after is None:
        return None

    if player_color is Color.WHITE:
        cpl = eval_before - eval_after
    else:
        cpl = eval_after - eval_before

    return max(0, int(cpl))


def average_cpl(cpls: List[int]) -> Optional[float]:
    if not cpls:
        return None
    return round(sum(cpls) / len(cpls), 1)


def calculate_accuracy(acpl: Optional[float], settings: "ScoringSettings") -> Optional[float]:
    """
    Calculates Lichess-style accuracy percentage from Average Centipawn Loss (ACPL).

    Returns:
        The accuracy as a percentage (0-100), rounded to one decimal place, or None.
    """
    if acpl is None or acpl < 0:
        return None
    consts = settings.accuracy
    # Formula: a * e^(b*x) + c, where x is ACPL.
    raw_accuracy = consts.const_a * math.exp(consts.const_b * acpl) + consts.const_c
    return round(max(0.0, min(100.0, raw_accuracy)), 1)
