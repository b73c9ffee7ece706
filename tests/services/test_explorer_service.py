# tests/services/test_explorer_service.py
from unittest.mock import AsyncMock, MagicMock, patch

import chess
import pytest
import requests

from repertoire_builder.config.settings import ExplorerSettings
from repertoire_builder.exceptions import DatabaseQueryError
from repertoire_builder.services.explorer_service import LichessExplorerService
from repertoire_builder.types import OpeningStat

PAYLOAD = {
    "white": 100, "draws": 50, "black": 80,
    "moves": [
        {"uci": "e2e4", "san": "e4", "white": 60, "draws": 20, "black": 40},
        {"uci": "d2d4", "san": "d4", "white": 40, "draws": 30, "black": 40},
        {"uci": "a2a3", "white": 1, "draws": 0, "black": 0},
    ],
}


def ok_response(payload=PAYLOAD, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    return response


@pytest.mark.asyncio
async def test_moves_are_converted_and_memoized():
    service = LichessExplorerService(ExplorerSettings(token="secret"))
    with patch("repertoire_builder.services.explorer_service.requests.get",
               return_value=ok_response()) as get:
        stats = await service.stats_for_position(chess.STARTING_FEN)
        again = await service.stats_for_position(chess.STARTING_FEN.replace(" 0 1", " 5 9"))

    assert stats == [OpeningStat("e4", 60, 40, 20), OpeningStat("d4", 40, 40, 30)]
    assert again == stats
    get.assert_called_once()
    args, kwargs = get.call_args
    assert args[0] == "https://explorer.lichess.ovh/lichess"
    assert kwargs["params"]["speeds"] == "blitz,rapid,classical"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_masters_database_sends_no_rating_filters():
    service = LichessExplorerService(ExplorerSettings(database="masters"))
    with patch("repertoire_builder.services.explorer_service.requests.get",
               return_value=ok_response()) as get:
        await service.stats_for_position(chess.STARTING_FEN)
    _, kwargs = get.call_args
    assert "ratings" not in kwargs["params"]
    assert "Authorization" not in kwargs["headers"]


@pytest.mark.asyncio
async def test_unknown_position_has_no_games():
    service = LichessExplorerService(ExplorerSettings())
    with patch("repertoire_builder.services.explorer_service.requests.get",
               return_value=ok_response(status=404)):
        assert await service.stats_for_position(chess.STARTING_FEN) == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_reported():
    service = LichessExplorerService(ExplorerSettings())
    with patch("repertoire_builder.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep, \
            patch("repertoire_builder.services.explorer_service.requests.get",
                  side_effect=requests.exceptions.ConnectionError("offline")) as get:
        with pytest.raises(DatabaseQueryError):
            await service.stats_for_position(chess.STARTING_FEN)
    assert get.call_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_http_error_is_a_query_error():
    response = ok_response(status=500)
    response.raise_for_status.side_effect = requests.exceptions.HTTPError("server error")
    service = LichessExplorerService(ExplorerSettings())
    with patch("repertoire_builder.services.explorer_service.requests.get", return_value=response):
        with pytest.raises(DatabaseQueryError):
            await service.stats_for_position(chess.STARTING_FEN)


@pytest.mark.asyncio
async def test_memo_keeps_only_the_most_recent_positions():
    after_e4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
    service = LichessExplorerService(ExplorerSettings(memo_size=1))
    with patch("repertoire_builder.services.explorer_service.requests.get",
               return_value=ok_response()) as get:
        await service.stats_for_position(chess.STARTING_FEN)
        await service.stats_for_position(chess.STARTING_FEN)
        await service.stats_for_position(after_e4)
        await service.stats_for_position(chess.STARTING_FEN)
    assert get.call_count == 3
