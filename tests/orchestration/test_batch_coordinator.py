# tests/orchestration/test_batch_coordinator.py
import asyncio

import pytest

from repertoire_builder.config.settings import BatchSettings, EngineSettings
from repertoire_builder.exceptions import EngineAnalysisError
from repertoire_builder.orchestration.batch_coordinator import BatchAnalysisCoordinator
from repertoire_builder.persistence.game_stats_store import SqliteGameStatsStore
from repertoire_builder.types import AnalyzeMode, GameAnalysisResult, GameRecord, PlayerStats

RUY_LOPEZ = '[Event "{event}"]\n[Result "*"]\n\n1. e4 e5 2. Nf3 Nc6 3. Bb5 a6 *\n'


def make_game(game_id, pgn=None):
    return GameRecord(game_id=game_id, pgn=pgn or RUY_LOPEZ.format(event=game_id))


class FakeSession:
    def __init__(self):
        self.closed = False

    async def analyze_positions(self, fens):
        return {}

    async def close(self):
        self.closed = True


class FakeAnalyzer:
    """Returns fixed statistics and raises for the game ids in `failing`."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.analyzed = []

    async def analyze(self, game, session, cancel_event=None):
        await asyncio.sleep(0)
        if game.game_id in self.failing:
            raise EngineAnalysisError(f"engine died on {game.game_id}")
        self.analyzed.append(game.game_id)
        return GameAnalysisResult(
            game_id=game.game_id, annotated_pgn=game.pgn,
            white=PlayerStats(acpl=12.5, accuracy_percent=91.0),
            black=PlayerStats(acpl=30.0, accuracy_percent=78.0),
        )


@pytest.fixture
def sessions():
    return []


@pytest.fixture
def session_factory(sessions):
    async def factory(settings):
        session = FakeSession()
        session.settings = settings
        sessions.append(session)
        return session
    return factory


def make_coordinator(tmp_path, analyzer, session_factory, progress=None, **overrides):
    settings = BatchSettings(
        output_dir=str(tmp_path / "analyzed"),
        stats_db_path=str(tmp_path / "stats.db"),
        depth=12,
        batch_size=2,
        **overrides,
    )
    store = SqliteGameStatsStore(settings.stats_db_path)
    coordinator = BatchAnalysisCoordinator(
        analyzer, session_factory,
        EngineSettings(path="/usr/bin/stockfish", parameters={"Hash": 64, "Threads": 8}),
        store, settings, progress_callback=progress,
    )
    return coordinator, store


@pytest.mark.asyncio
async def test_one_failing_game_does_not_stop_the_batch(tmp_path, sessions, session_factory):
    progress = []

    async def on_progress(done, total):
        progress.append((done, total))

    analyzer = FakeAnalyzer(failing={"g2"})
    coordinator, store = make_coordinator(tmp_path, analyzer, session_factory, progress=on_progress)
    report = await coordinator.run([make_game(f"g{i}") for i in range(5)])

    assert report.total == 5
    assert report.succeeded == 4
    assert report.failed == 1
    assert report.completed == 5
    assert not report.cancelled
    assert progress[-1] == (5, 5)
    assert sorted(await store.analyzed_game_ids()) == ["g0", "g1", "g3", "g4"]
    for game_id in ("g0", "g1", "g3", "g4"):
        assert (tmp_path / "analyzed" / f"{game_id}.pgn").exists()
    assert all(result.output_path for result in report.results)

    assert len(sessions) == 5
    assert all(session.closed for session in sessions)
    assert all(session.settings.parameters == {"Hash": 64, "Threads": 1} for session in sessions)
    assert all(session.settings.depth == 12 for session in sessions)


@pytest.mark.asyncio
async def test_cancellation_stops_after_current_batch(tmp_path, sessions, session_factory):
    cancel = asyncio.Event()

    async def on_progress(done, total):
        if done == 2:
            cancel.set()

    analyzer = FakeAnalyzer()
    coordinator, store = make_coordinator(tmp_path, analyzer, session_factory, progress=on_progress)
    report = await coordinator.run([make_game(f"g{i}") for i in range(5)], cancel_event=cancel)

    assert report.cancelled
    assert report.completed == 2
    assert sorted(analyzer.analyzed) == ["g0", "g1"]
    assert len(sessions) == 2
    # Results saved before the cancellation stay saved.
    assert sorted(await store.analyzed_game_ids()) == ["g0", "g1"]


@pytest.mark.asyncio
async def test_unanalyzed_mode_skips_known_and_annotated_games(tmp_path, session_factory):
    coordinator, store = make_coordinator(tmp_path, FakeAnalyzer(), session_factory,
                                          analyze_mode=AnalyzeMode.UNANALYZED, min_plies=5)
    await store.save_game_stats(GameAnalysisResult(
        game_id="done", annotated_pgn="*",
        white=PlayerStats(acpl=None, accuracy_percent=None),
        black=PlayerStats(acpl=None, accuracy_percent=None),
    ))
    games = [
        make_game("done"),
        make_game("annotated", '[Event "x"]\n\n1. e4 { [%eval 0.3] } e5 2. Nf3 Nc6 3. Bb5 a6 *\n'),
        make_game("short", '[Event "x"]\n\n1. e4 e5 *\n'),
        make_game("fresh"),
    ]
    selected = await coordinator.select_games(games)
    assert [game.game_id for game in selected] == ["fresh"]


@pytest.mark.asyncio
async def test_all_mode_only_applies_the_length_filter(tmp_path, session_factory):
    coordinator, _ = make_coordinator(tmp_path, FakeAnalyzer(), session_factory, analyze_mode=AnalyzeMode.ALL)
    games = [make_game("a"), make_game("short", '[Event "x"]\n\n1. d4 *\n'), make_game("b")]
    selected = await coordinator.select_games(games)
    assert [game.game_id for game in selected] == ["a", "b"]


@pytest.mark.asyncio
async def test_session_started_after_cancellation_is_closed_unused(tmp_path, sessions):
    cancel = asyncio.Event()

    async def slow_factory(settings):
        session = FakeSession()
        sessions.append(session)
        cancel.set()
        await asyncio.sleep(0)
        return session

    analyzer = FakeAnalyzer()
    coordinator, store = make_coordinator(tmp_path, analyzer, slow_factory)
    report = await coordinator.run([make_game("g0"), make_game("g1")], cancel_event=cancel)

    assert report.cancelled
    assert report.succeeded == 0
    assert analyzer.analyzed == []
    assert sessions and all(session.closed for session in sessions)
    assert await store.analyzed_game_ids() == []
