# main.py
"""
The command-line entry point for the Repertoire Builder.

Two commands are offered:

* ``build-tree`` grows a repertoire tree from a FEN or a PGN with an engine
  and/or the Lichess opening explorer, and writes the result as PGN.
* ``analyze-all`` analyzes every game of a PGN file with Stockfish, several
  games at a time, writing one annotated PGN per game plus statistics.

Ctrl+C cancels either command cooperatively; partial results are kept.
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import chess
import structlog

from repertoire_builder.config.settings import (ANALYSIS_SPEED_DEPTHS, BatchSettings, BuildConfig,
                                                CacheSettings, EngineSettings, Settings, settings)
from repertoire_builder.containers import get_container
from repertoire_builder.core.move_tree import MoveTree
from repertoire_builder.core.position_service import ChessPositionService
from repertoire_builder.exceptions import RepertoireBuilderError
from repertoire_builder.orchestration.batch_coordinator import BatchAnalysisCoordinator
from repertoire_builder.orchestration.tree_builder import TreeBuilder
from repertoire_builder.services.pgn_service import PgnService
from repertoire_builder.services.recommendation_cache import SqliteRecommendationStore
from repertoire_builder.types import AnalyzeMode, BuildMode, BuildOutcome, Color
from repertoire_builder.utils.logging_config import setup_logging
from repertoire_builder.utils.signal_manager import CancelOnSignal
from repertoire_builder.utils.system_utils import find_engine_executable

logger = structlog.get_logger(__name__)


def _parse_path(text: str) -> tuple:
    return tuple(int(part) for part in text.split(",") if part.strip()) if text else ()


def _engine_settings(args: argparse.Namespace, required: bool) -> Optional[EngineSettings]:
    try:
        engine_path = find_engine_executable(args.engine)
    except FileNotFoundError:
        if required:
            raise
        return None
    return EngineSettings(path=str(engine_path), name=args.engine_name)


async def cmd_build_tree(args: argparse.Namespace, app_settings: Settings) -> int:
    positions = ChessPositionService()
    if args.pgn:
        pgn_text = Path(args.pgn).read_text(encoding="utf-8", errors="replace")
        tree = PgnService.tree_from_pgn(pgn_text, positions)
    else:
        tree = MoveTree(args.fen or chess.STARTING_FEN, positions)

    config = app_settings.build.model_copy(update={
        key: value for key, value in {
            "automated_color": Color(args.color) if args.color else None,
            "mode": BuildMode(args.mode) if args.mode else None,
            "max_depth": args.depth,
            "engine_budget_ms": args.budget_ms,
            "coverage_percent": args.coverage,
            "min_moves": args.min_moves,
            "tie_break_cp": args.tie_break_cp,
        }.items() if value is not None
    })
    config = BuildConfig.model_validate(config.model_dump())
    use_database = args.use_database or config.mode is BuildMode.DATABASE

    container = get_container(
        app_settings,
        engine_settings=_engine_settings(args, required=config.mode is BuildMode.ENGINE),
        cache_settings=CacheSettings(db_filepath=args.cache_db or app_settings.default_cache_db_path),
        use_database=use_database,
    )
    cancel_event = asyncio.Event()
    async with container.resolve(SqliteRecommendationStore), CancelOnSignal(cancel_event):
        builder: TreeBuilder = container.resolve(TreeBuilder)
        report = await builder.run(tree, _parse_path(args.start_path), config, cancel_event)

    output = Path(args.output)
    await container.resolve(PgnService).export_pgn(PgnService.tree_to_pgn(tree), output)
    logger.info("Repertoire written.", path=str(output), outcome=report.outcome.value,
                nodes_added=report.nodes_added, tree_size=len(tree))
    if report.outcome is BuildOutcome.FAILED:
        logger.error("Build failed.", error=report.error)
        return 1
    return 0


async def cmd_analyze_all(args: argparse.Namespace, app_settings: Settings) -> int:
    pgn_service = PgnService()
    games = await pgn_service.read_games(Path(args.pgn))
    batch_settings = BatchSettings(
        output_dir=args.output_dir or app_settings.default_output_dir,
        stats_db_path=args.stats_db or app_settings.default_stats_db_path,
        depth=ANALYSIS_SPEED_DEPTHS[args.speed],
        analyze_mode=AnalyzeMode(args.mode),
        batch_size=args.batch_size,
    )
    container = get_container(
        app_settings, engine_settings=_engine_settings(args, required=True), batch_settings=batch_settings,
    )

    async def report_progress(completed: int, total: int) -> None:
        logger.info("Progress.", completed=completed, total=total)

    coordinator: BatchAnalysisCoordinator = container.resolve(
        BatchAnalysisCoordinator, progress_callback=report_progress
    )
    cancel_event = asyncio.Event()
    async with CancelOnSignal(cancel_event):
        report = await coordinator.run(games, cancel_event)
    logger.info("Analysis finished.", total=report.total, succeeded=report.succeeded,
                failed=report.failed, cancelled=report.cancelled)
    return 1 if report.failed and not report.succeeded else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="repertoire-builder", description=__doc__.splitlines()[1])
    parser.add_argument("--log-level", default=settings.default_log_level)
    parser.add_argument("--log-file", type=Path, help="Also write JSON logs to this file.")
    sub = parser.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("build-tree", help="Grow a repertoire tree with an engine and/or the opening explorer.")
    source = sp.add_mutually_exclusive_group()
    source.add_argument("--fen", help="Start position (default: initial position).")
    source.add_argument("--pgn", help="PGN whose moves and variations seed the tree.")
    sp.add_argument("--start-path", default="", help="Comma-separated child indices of the node to expand.")
    sp.add_argument("--output", "-o", required=True, help="PGN file to write the tree to.")
    sp.add_argument("--engine", help="UCI engine executable (default: STOCKFISH_PATH or PATH).")
    sp.add_argument("--engine-name", help="Engine display name; also used as a cache identity.")
    sp.add_argument("--color", choices=[c.value for c in Color], help="Side the repertoire is for.")
    sp.add_argument("--mode", choices=[m.value for m in BuildMode], help="Policy for the repertoire side.")
    sp.add_argument("--depth", type=int, help="Decisions per line for the repertoire side.")
    sp.add_argument("--budget-ms", type=int, help="Engine search time per position.")
    sp.add_argument("--coverage", type=float, help="Percent of database games opponent replies must cover.")
    sp.add_argument("--min-moves", type=int, help="Minimum opponent replies per position.")
    sp.add_argument("--tie-break-cp", type=int, help="Max gap for preferring a near-equal second line.")
    sp.add_argument("--use-database", action="store_true", help="Use the opening explorer for opponent replies.")
    sp.add_argument("--cache-db", help="SQLite file for cached engine recommendations.")

    sp = sub.add_parser("analyze-all", help="Analyze every game of a PGN file.")
    sp.add_argument("--pgn", required=True, help="Input PGN file.")
    sp.add_argument("--engine", help="Stockfish executable (default: STOCKFISH_PATH or PATH).")
    sp.add_argument("--engine-name", help=argparse.SUPPRESS)
    sp.add_argument("--speed", choices=list(ANALYSIS_SPEED_DEPTHS), default="focused")
    sp.add_argument("--mode", choices=[m.value for m in AnalyzeMode], default=AnalyzeMode.UNANALYZED.value)
    sp.add_argument("--output-dir", help="Folder for annotated PGN files.")
    sp.add_argument("--stats-db", help="SQLite file for per-game statistics.")
    sp.add_argument("--batch-size", type=int, help="Games analyzed at once (default: cores / 4).")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level, log_file=args.log_file)
    commands = {"build-tree": cmd_build_tree, "analyze-all": cmd_analyze_all}
    try:
        return asyncio.run(commands[args.command](args, settings))
    except (RepertoireBuilderError, FileNotFoundError) as e:
        logger.critical("Command failed.", command=args.command, error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
