# repertoire_builder/services/explorer_service.py
"""
An `OpeningDatabase` backed by the Lichess opening explorer.

The explorer reports, for a position, every move played from it in its game
collection together with White-win, Black-win and draw counts. The tree builder
uses those counts to pick the opponent's most common replies and, in database
mode, the automated side's best-scoring move.

`requests` is synchronous, so each HTTP call runs in a worker thread. Answers
are memoized per position identity, because a build run revisits transposed
positions. The memo keeps the most recently used `memo_size` positions.
"""

import asyncio
from collections import OrderedDict
from typing import Any, Dict, List, TYPE_CHECKING

import requests
import structlog

from repertoire_builder.core.position_identity import canonicalize
from repertoire_builder.exceptions import DatabaseQueryError
from repertoire_builder.types import FEN, IdentityKey, OpeningStat
from repertoire_builder.utils.retry import retry_with_backoff

if TYPE_CHECKING:
    from repertoire_builder.config.settings import ExplorerSettings

logger = structlog.get_logger(__name__)

# Retried by `retry_with_backoff` before a DatabaseQueryError is raised.
TRANSIENT_HTTP_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


class LichessExplorerService:
    """Queries the Lichess explorer and converts its move list into `OpeningStat`s."""

    def __init__(self, settings: "ExplorerSettings"):
        self._settings = settings
        self._url = f"{settings.base_url.rstrip('/')}/{settings.database}"
        self._headers = {"Accept": "application/json"}
        if settings.token:
            self._headers["Authorization"] = f"Bearer {settings.token}"
        self._memo: "OrderedDict[IdentityKey, List[OpeningStat]]" = OrderedDict()

    def _params(self, fen: FEN) -> Dict[str, str]:
        params = {"variant": "standard", "fen": fen}
        if self._settings.database == "lichess":
            params["speeds"] = self._settings.speeds
            params["ratings"] = self._settings.ratings
        return params

    @retry_with_backoff(exceptions_to_catch=TRANSIENT_HTTP_ERRORS, db_type="explorer")
    async def _fetch_json(self, fen: FEN) -> Dict[str, Any]:
        response = await asyncio.to_thread(
            requests.get, self._url,
            params=self._params(fen), headers=self._headers, timeout=self._settings.timeout_s,
        )
        if response.status_code == 404:
            # Unknown positions have no games.
            return {"moves": []}
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _to_stats(payload: Dict[str, Any]) -> List[OpeningStat]:
        stats = []
        for move in payload.get("moves", []):
            san = move.get("san")
            if not san:
                continue
            stats.append(
                OpeningStat(
                    move=san,
                    white_wins=int(move.get("white", 0)),
                    black_wins=int(move.get("black", 0)),
                    draws=int(move.get("draws", 0)),
                )
            )
        return stats

    async def stats_for_position(self, fen: FEN) -> List[OpeningStat]:
        """
        Returns the per-move results recorded for `fen`.

        Raises:
            DatabaseQueryError: If the explorer cannot be reached or answers
                with an error or a malformed body.
        """
        identity = canonicalize(fen)
        if identity in self._memo:
            self._memo.move_to_end(identity)
            return self._memo[identity]
        try:
            payload = await self._fetch_json(fen)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise DatabaseQueryError(f"Opening explorer query failed for '{fen}': {e}") from e

        stats = self._to_stats(payload)
        logger.debug("Explorer answered.", identity=identity, moves=len(stats))
        self._remember(identity, stats)
        return stats

    def _remember(self, identity: IdentityKey, stats: List[OpeningStat]) -> None:
        if self._settings.memo_size <= 0:
            return
        self._memo[identity] = stats
        while len(self._memo) > self._settings.memo_size:
            self._memo.popitem(last=False)
