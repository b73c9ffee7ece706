# repertoire_builder/services/pgn_service.py
"""
Provides a service for handling all PGN text and file interactions.

This module is the adapter between PGN (Portable Game Notation) and the rest of
the application. It reads game collections into `GameRecord`s for batch
analysis, converts a PGN's move tree into a `MoveTree` for the tree builder and
back again, and writes annotated games to disk. Blocking `python-chess` parsing
runs in worker threads; file writes use `aiofiles`.
"""

import asyncio
import io
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import aiofiles
import chess
import chess.pgn

from repertoire_builder.core.move_tree import MoveNode, MoveTree
from repertoire_builder.exceptions import PgnParsingError, PgnServiceError
from repertoire_builder.types import GameRecord, PositionService

# Markers that show a game already carries engine evaluations.
_ANALYSIS_MARKERS = ("[%eval", "[%wdl")

# PGN placeholders for a tag whose value is unknown or not applicable.
_UNKNOWN_TAG_VALUES = ("", "?", "-")


class PgnService:
    """A stateless service for PGN parsing, conversion and export."""

    # Tried in order; URL-based IDs are stable across exports of the same game.
    _GAME_ID_EXTRACTION_PATTERNS: List[Tuple[str, re.Pattern]] = [
        ("Link", re.compile(r"lichess\.org/([a-zA-Z0-9]{8})")),
        ("Site", re.compile(r"lichess\.org/([a-zA-Z0-9]{8})")),
        ("Link", re.compile(r"chess\.com/game/live/(\d+)")),
        ("Site", re.compile(r"chess\.com/game/live/(\d+)")),
    ]

    @classmethod
    def extract_game_id(cls, headers: Mapping[str, str]) -> str:
        """
        Derives a stable ID for a game from its headers.

        Lichess and Chess.com URLs in the "Link" or "Site" tags win; otherwise
        the ID is built from the player names and the date, plus the round when known.
        """
        for tag_name, pattern in cls._GAME_ID_EXTRACTION_PATTERNS:
            if header_value := headers.get(tag_name):
                if match := pattern.search(str(header_value)):
                    prefix = "lichess" if "lichess" in str(header_value) else "chesscom"
                    return f"{prefix}_{match.group(1)}"

        white = headers.get("White", "Unknown").replace(" ", "_")
        black = headers.get("Black", "Unknown").replace(" ", "_")
        date = headers.get("Date", "0000.00.00")
        game_id = f"local_{white}_vs_{black}_{date}"
        round_ = str(headers.get("Round", "?")).strip()
        if round_ not in _UNKNOWN_TAG_VALUES:
            game_id += f"_r{round_.replace(' ', '_')}"
        return game_id

    @staticmethod
    def is_analyzed(pgn: str) -> bool:
        """True when the PGN text already contains engine evaluation comments."""
        return any(marker in pgn for marker in _ANALYSIS_MARKERS)

    @staticmethod
    def parse_game(pgn: str) -> chess.pgn.Game:
        """
        Parses a single game, raising `PgnParsingError` for empty or illegal input.
        """
        game = chess.pgn.read_game(io.StringIO(pgn))
        if game is None:
            raise PgnParsingError("PGN text contains no game.")
        if game.errors:
            raise PgnParsingError(f"PGN contains errors: {game.errors[0]}")
        return game

    @staticmethod
    def count_mainline_plies(pgn: str) -> int:
        """Returns the number of mainline half-moves, or 0 if the text is not a game."""
        game = chess.pgn.read_game(io.StringIO(pgn))
        if game is None:
            return 0
        return sum(1 for _ in game.mainline_moves())

    def _read_games_sync(self, pgn_filepath: Path) -> List[GameRecord]:
        records: List[GameRecord] = []
        seen: Dict[str, int] = {}
        exporter_kwargs = dict(headers=True, variations=True, comments=True)
        with pgn_filepath.open("r", encoding="utf-8", errors="replace") as handle:
            while True:
                try:
                    game = chess.pgn.read_game(handle)
                except (ValueError, RuntimeError):
                    # Skip games with fundamental format errors.
                    continue
                if game is None:
                    break
                pgn_text = game.accept(chess.pgn.StringExporter(**exporter_kwargs))
                game_id = self.extract_game_id(game.headers)
                # Header-derived IDs can repeat within one file; later copies get a counter.
                seen[game_id] = seen.get(game_id, 0) + 1
                if seen[game_id] > 1:
                    game_id = f"{game_id}_{seen[game_id]}"
                records.append(GameRecord(game_id=game_id, pgn=pgn_text))
        return records

    async def read_games(self, pgn_filepath: Path) -> List[GameRecord]:
        """
        Reads every game in a PGN file.

        Raises:
            PgnServiceError: If the file cannot be found or read.
        """
        try:
            return await asyncio.to_thread(self._read_games_sync, pgn_filepath)
        except FileNotFoundError as e:
            raise PgnServiceError(f"Input PGN file not found: {pgn_filepath}") from e
        except OSError as e:
            raise PgnServiceError(f"Failed to read games from {pgn_filepath}: {e}") from e

    @staticmethod
    def tree_from_pgn(pgn: str, positions: PositionService) -> MoveTree:
        """
        Builds a `MoveTree` from a PGN, keeping every variation and comment.

        A "FEN" header, when present, roots the tree at that setup position.
        """
        game = PgnService.parse_game(pgn)
        tree = MoveTree(game.board().fen(), positions)
        tree.root.comment = game.comment

        # A parent's variations are all added in one pass, so sibling order
        # follows the PGN regardless of the order parents are visited in.
        stack: List[Tuple[chess.pgn.GameNode, Tuple[int, ...]]] = [(game, ())]
        while stack:
            pgn_node, path = stack.pop()
            for variation in pgn_node.variations:
                child_path, _ = tree.add_move(path, variation.move.uci())
                child = tree.node_at(child_path)
                child.comment = variation.comment
                child.annotations = [f"${nag}" for nag in sorted(variation.nags)]
                stack.append((variation, child_path))
        return tree

    @staticmethod
    def tree_to_pgn(tree: MoveTree, headers: Optional[Mapping[str, str]] = None) -> str:
        """Renders a `MoveTree` as PGN text, child 0 as mainline."""
        board = chess.Board(tree.root.fen)
        game = chess.pgn.Game.from_board(board)
        for name, value in (headers or {}).items():
            game.headers[name] = value
        game.comment = tree.root.comment

        stack: List[Tuple[MoveNode, chess.pgn.GameNode]] = [(tree.root, game)]
        while stack:
            node, pgn_node = stack.pop()
            for child in node.children:
                nags = [int(a[1:]) for a in child.annotations if a.startswith("$") and a[1:].isdigit()]
                pgn_child = pgn_node.add_variation(chess.Move.from_uci(child.uci), comment=child.comment, nags=nags)
                stack.append((child, pgn_child))
        return game.accept(chess.pgn.StringExporter(headers=True, variations=True, comments=True))

    async def export_pgn(self, pgn_text: str, output_filepath: Path, append: bool = False) -> None:
        """
        Writes PGN text to a file, replacing it unless `append` is set.

        Raises:
            PgnServiceError: If the file cannot be written to.
        """
        try:
            output_filepath.parent.mkdir(parents=True, exist_ok=True)
            # PGN standard requires a blank line between games.
            async with aiofiles.open(output_filepath, "a" if append else "w", encoding="utf-8") as f:
                await f.write(pgn_text.rstrip() + "\n\n")
        except OSError as e:
            raise PgnServiceError(f"Failed to export PGN to {output_filepath}: {e}") from e
