# repertoire_builder/types.py
"""
A central module for shared data structures and service interfaces (Protocols).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import (Dict, List, Optional, Protocol, Sequence, Tuple, TypeAlias,
                    runtime_checkable)

FEN: TypeAlias = str
UCI: TypeAlias = str
SAN: TypeAlias = str
IdentityKey: TypeAlias = str
PathKey: TypeAlias = str
TreePath: TypeAlias = Tuple[int, ...]


class Color(str, Enum):
    WHITE = "white"; BLACK = "black"

    @property
    def opposite(self) -> "Color":
        return Color.BLACK if self is Color.WHITE else Color.WHITE


class BuildMode(str, Enum):
    ENGINE = "engine"; DATABASE = "database"


class BuilderState(str, Enum):
    IDLE = "idle"; RUNNING = "running"; COMPLETED = "completed"
    NO_PROGRESS = "no_progress"; CANCELLED = "cancelled"; FAILED = "failed"


class BuildOutcome(str, Enum):
    COMPLETED = "completed"; NO_PROGRESS = "no_progress"
    CANCELLED = "cancelled"; FAILED = "failed"


class AnalyzeMode(str, Enum):
    ALL = "all"; UNANALYZED = "unanalyzed"


# --- DATA CONTRACTS ---

@dataclass(frozen=True, slots=True)
class EngineLine:
    """One ranked engine line. Scores are from the side to move's point of view."""
    rank: int; uci: UCI; score_cp: Optional[int]; score_mate: Optional[int] = None


@dataclass(frozen=True, slots=True)
class OpeningStat:
    """Reference-database statistics for one move played from a position."""
    move: str; white_wins: int; black_wins: int; draws: int

    @property
    def total(self) -> int:
        return self.white_wins + self.black_wins + self.draws


@dataclass(frozen=True, slots=True)
class CachedRecommendation:
    recommended_move: UCI; search_budget_ms: int; engine_id: str


@dataclass
class BuildReport:
    outcome: BuildOutcome; nodes_added: int
    added_paths: List[TreePath] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GameRecord:
    game_id: str; pgn: str; user_color: Optional[Color] = None


@dataclass(frozen=True, slots=True)
class PlayerStats:
    acpl: Optional[float]; accuracy_percent: Optional[float]


@dataclass(frozen=True)
class GameAnalysisResult:
    game_id: str; annotated_pgn: str; white: PlayerStats; black: PlayerStats
    output_path: Optional[str] = None


@dataclass
class BatchReport:
    total: int; completed: int = 0; succeeded: int = 0; failed: int = 0
    cancelled: bool = False
    results: List[GameAnalysisResult] = field(default_factory=list)


# --- PROTOCOLS: Abstract Interfaces for Services ---
# These define the "contracts" that concrete service implementations must adhere to.
# They enable dependency inversion and allow for easy faking in tests.

@runtime_checkable
class PositionService(Protocol):
    """Legality, SAN generation and move application over FEN strings."""
    def is_valid(self, fen: FEN) -> bool: ...
    def legal_moves(self, fen: FEN) -> List[UCI]: ...
    def apply(self, fen: FEN, move: UCI) -> FEN: ...
    def side_to_move(self, fen: FEN) -> Color: ...
    def to_san(self, fen: FEN, move: UCI) -> SAN: ...
    def parse_move(self, fen: FEN, text: str) -> Optional[UCI]: ...
    def is_game_over(self, fen: FEN) -> bool: ...


@runtime_checkable
class TreeEngineService(Protocol):
    """A single stateful engine session used by one tree-build run."""
    engine_id: str
    engine_name: str
    async def best_lines(self, fen: FEN, min_lines: int, budget_ms: int) -> List[EngineLine]: ...
    async def stop(self, session_id: str) -> None: ...


@runtime_checkable
class GameEngineSession(Protocol):
    """A per-game engine session used by the batch coordinator."""
    async def analyze_positions(self, fens: Sequence[FEN]) -> Dict[FEN, List[EngineLine]]: ...
    async def close(self) -> None: ...


@runtime_checkable
class OpeningDatabase(Protocol):
    """Reference game database queried for per-move statistics."""
    async def stats_for_position(self, fen: FEN) -> List[OpeningStat]: ...


@runtime_checkable
class RecommendationStore(Protocol):
    """Durable key-value storage behind the RecommendationCache."""
    async def fetch(self, identity: IdentityKey, engine_id: str) -> Optional[CachedRecommendation]: ...
    async def upsert(self, identity: IdentityKey, engine_id: str, move: UCI, budget_ms: int) -> None: ...


@runtime_checkable
class GameStatsStore(Protocol):
    """Persistence for per-game statistics produced by batch analysis."""
    async def save_game_stats(self, result: GameAnalysisResult) -> None: ...
    async def analyzed_game_ids(self) -> List[str]: ...
