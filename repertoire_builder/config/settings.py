# repertoire_builder/config/settings.py
"""
Configuration settings for the Repertoire Builder, powered by Pydantic.

This module centralizes all tunable parameters, default values, and configuration
schemas. Every threshold the tree builder uses is a named field on `BuildConfig`,
which is passed explicitly into each run instead of being read from ambient state.
Application-wide defaults can be loaded from environment variables.
"""
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from repertoire_builder.types import AnalyzeMode, BuildMode, Color

# Depth presets offered by the "analyze all games" workflow.
ANALYSIS_SPEED_DEPTHS: Dict[str, int] = {
    "express": 12,
    "swift": 16,
    "focused": 20,
    "advanced": 28,
    "deepdive": 36,
}


class BuildConfig(BaseModel):
    """All parameters for a single tree-build run."""
    automated_color: Color = Field(Color.WHITE, description="The side whose moves the builder decides (the repertoire owner).")
    mode: BuildMode = Field(BuildMode.ENGINE, description="Policy used for the automated side's moves.")
    max_depth: int = Field(5, ge=1, description="Number of automated-side decisions to make along any line.")
    engine_budget_ms: int = Field(1000, ge=1, description="Search time requested from the engine per position.")
    min_engine_lines: int = Field(2, ge=2, description="Minimum number of ranked lines requested from the engine.")
    tie_break_cp: int = Field(20, ge=0, description="Maximum centipawn gap for the second engine line to count as practically equal.")
    coverage_percent: float = Field(80.0, description="Cumulative share of database games the opponent's book moves must cover.")
    min_moves: int = Field(1, description="Minimum number of opponent book moves to branch into.")
    step_delay_s: float = Field(0.0, ge=0.0, description="Optional pause after each node expansion.")

    @model_validator(mode='after')
    def clamp_coverage(self) -> 'BuildConfig':
        """Clamps coverage to a percentage and the minimum move count to at least one."""
        self.coverage_percent = max(0.0, min(100.0, self.coverage_percent))
        self.min_moves = max(1, int(self.min_moves))
        return self

    @property
    def max_plies(self) -> int:
        return self.max_depth * 2


class EngineSettings(BaseModel):
    """Configuration for a single chess engine instance."""
    path: str = Field(description="The file path to the UCI engine executable.")
    name: Optional[str] = Field(None, description="Display name; used as a secondary cache identity.")
    depth: int = Field(20, description="The default search depth for per-game analysis.")
    parameters: dict = Field(default_factory=dict, description="UCI parameters to set on engine startup (e.g., {'Hash': 128}).")


class CacheSettings(BaseModel):
    """Configuration for the recommendation cache."""
    db_filepath: str = Field(description="The file path for the SQLite cache database.")


class ExplorerSettings(BaseModel):
    """Configuration for the reference opening database."""
    database: str = Field("lichess", description="Explorer database: 'lichess' or 'masters'.")
    base_url: str = Field("https://explorer.lichess.ovh", description="Explorer API root.")
    speeds: str = Field("blitz,rapid,classical", description="Game speeds to include (lichess database only).")
    ratings: str = Field("1800,2000,2200,2500", description="Rating buckets to include (lichess database only).")
    timeout_s: float = Field(10.0, description="HTTP timeout per request.")
    token: Optional[str] = Field(None, description="Optional Lichess API token.")
    memo_size: int = Field(4096, ge=0, description="Positions whose explorer answers are kept in memory; 0 disables the memo.")


class BatchSettings(BaseModel):
    """Configuration for a batch game analysis run."""
    output_dir: str = Field(description="Folder that receives the analyzed PGN files.")
    stats_db_path: str = Field(description="SQLite file for per-game statistics.")
    depth: int = Field(ANALYSIS_SPEED_DEPTHS["focused"], description="Engine depth per position.")
    analyze_mode: AnalyzeMode = AnalyzeMode.UNANALYZED
    batch_size: Optional[int] = Field(None, description="Games analyzed concurrently; derived from CPU count when unset.")
    min_plies: int = Field(5, description="Games with fewer plies than this are not analyzed.")


class AccuracyConstantsModel(BaseModel):
    """Constants used in the formula to convert ACPL to a Lichess-style accuracy percentage."""
    const_a: float = 103.1668
    const_b: float = -0.004354
    const_c: float = -3.1668


class ScoringSettings(BaseModel):
    """Score interpretation used when summarising analyzed games."""
    mate_score_equivalent_cp: int = Field(10000, description="The centipawn value assigned to a forced mate, used for CPL calculations.")
    accuracy: AccuracyConstantsModel = Field(default_factory=AccuracyConstantsModel)


# --- Main Application Settings Class ---

class Settings(BaseSettings):
    """
    Main configuration class for the application.

    It loads settings from environment variables with the prefix 'REPERTOIRE_BUILDER_'.
    Nested models can be configured using a double underscore delimiter, e.g.,
    `REPERTOIRE_BUILDER_BUILD__TIE_BREAK_CP=15`.
    """
    model_config = SettingsConfigDict(env_prefix='REPERTOIRE_BUILDER_', env_nested_delimiter='__')

    build: BuildConfig = Field(default_factory=BuildConfig)
    explorer: ExplorerSettings = Field(default_factory=ExplorerSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    default_cache_db_path: str = "data/variant_positions.db"
    default_stats_db_path: str = "data/game_stats.db"
    default_output_dir: str = "data/analyzed"
    default_log_level: str = "INFO"

# A singleton instance of the settings, accessible throughout the application.
settings = Settings()
