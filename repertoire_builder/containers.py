# repertoire_builder/containers.py
"""
Defines the Dependency Injection (DI) container for the application.

This module uses the `punq` library to wire the stores, services and
orchestrators of one CLI invocation. Components whose settings come from the
command line are registered with explicit factories; the rest are resolved
from their constructor type hints.
"""

from typing import Optional

import punq

from repertoire_builder.config.settings import (BatchSettings, CacheSettings, EngineSettings,
                                                Settings)
from repertoire_builder.core.position_service import ChessPositionService
from repertoire_builder.orchestration.batch_coordinator import BatchAnalysisCoordinator
from repertoire_builder.orchestration.game_analyzer import GameAnalyzer
from repertoire_builder.orchestration.tree_builder import TreeBuilder
from repertoire_builder.persistence.game_stats_store import SqliteGameStatsStore
from repertoire_builder.services.explorer_service import LichessExplorerService
from repertoire_builder.services.pgn_service import PgnService
from repertoire_builder.services.recommendation_cache import (RecommendationCache,
                                                              SqliteRecommendationStore)
from repertoire_builder.services.stockfish_service import StockfishService
from repertoire_builder.services.uci_engine_service import UciEngineService


def get_container(
    settings: Settings,
    engine_settings: Optional[EngineSettings] = None,
    cache_settings: Optional[CacheSettings] = None,
    batch_settings: Optional[BatchSettings] = None,
    use_database: bool = False,
) -> punq.Container:
    """
    Initializes and returns a DI container configured for one CLI command.

    `SqliteRecommendationStore` is registered as a singleton and must be
    entered (`async with`) by the caller before a build runs.
    """
    container = punq.Container()
    container.register(Settings, instance=settings)
    container.register(PgnService, scope=punq.Scope.singleton)
    container.register(ChessPositionService, factory=lambda: ChessPositionService(), scope=punq.Scope.singleton)

    cache_settings = cache_settings or CacheSettings(db_filepath=settings.default_cache_db_path)
    container.register(
        SqliteRecommendationStore, factory=lambda: SqliteRecommendationStore(cache_settings),
        scope=punq.Scope.singleton,
    )
    container.register(
        RecommendationCache, factory=lambda: RecommendationCache(container.resolve(SqliteRecommendationStore)),
        scope=punq.Scope.singleton,
    )

    if engine_settings is not None:
        container.register(
            UciEngineService, factory=lambda: UciEngineService(engine_settings), scope=punq.Scope.singleton
        )
    if use_database:
        container.register(
            LichessExplorerService, factory=lambda: LichessExplorerService(settings.explorer),
            scope=punq.Scope.singleton,
        )

    container.register(
        TreeBuilder,
        factory=lambda: TreeBuilder(
            positions=container.resolve(ChessPositionService),
            cache=container.resolve(RecommendationCache),
            engine=container.resolve(UciEngineService) if engine_settings is not None else None,
            database=container.resolve(LichessExplorerService) if use_database else None,
        ),
    )

    container.register(
        GameAnalyzer, factory=lambda: GameAnalyzer(settings.scoring, container.resolve(PgnService))
    )
    if batch_settings is not None and engine_settings is not None:
        container.register(
            SqliteGameStatsStore, factory=lambda: SqliteGameStatsStore(batch_settings.stats_db_path),
            scope=punq.Scope.singleton,
        )
        container.register(
            BatchAnalysisCoordinator,
            factory=lambda progress_callback=None: BatchAnalysisCoordinator(
                analyzer=container.resolve(GameAnalyzer),
                session_factory=StockfishService.create,
                engine_settings=engine_settings,
                stats_store=container.resolve(SqliteGameStatsStore),
                settings=batch_settings,
                pgn_service=container.resolve(PgnService),
                progress_callback=progress_callback,
            ),
        )
    return container
