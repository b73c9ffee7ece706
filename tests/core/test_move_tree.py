# tests/core/test_move_tree.py
import chess
import pytest

from repertoire_builder.core.move_tree import MoveTree, path_key
from repertoire_builder.core.position_service import ChessPositionService
from repertoire_builder.exceptions import InvalidPositionError


@pytest.fixture
def positions():
    return ChessPositionService()


@pytest.fixture
def tree(positions):
    return MoveTree(chess.STARTING_FEN, positions)


def test_first_move_becomes_mainline_and_later_moves_are_variations(tree):
    e4_path, created = tree.add_move((), "e2e4")
    d4_path, _ = tree.add_move((), "d2d4")
    assert created
    assert e4_path == (0,)
    assert d4_path == (1,)
    assert [node.san for node in tree.root.children] == ["e4", "d4"]
    assert [node.san for node in tree.mainline()] == ["e4"]


def test_same_san_reuses_existing_child(tree):
    tree.add_move((), "g1f3")
    path, created = tree.add_move((), "g1f3")
    assert path == (0,)
    assert not created
    assert len(tree.root.children) == 1


def test_mainline_flag_inserts_at_index_zero(tree):
    tree.add_move((), "e2e4")
    path, _ = tree.add_move((), "c2c4", mainline=True)
    assert path == (0,)
    assert [node.san for node in tree.root.children] == ["c4", "e4"]


def test_nodes_record_fen_and_notation(tree):
    path, _ = tree.add_move((), "e2e4")
    child_path, _ = tree.add_move(path, "c7c5")
    node = tree.node_at(child_path)
    assert node.san == "c5"
    assert node.uci == "c7c5"
    assert node.fen.startswith("rnbqkbnr/pp1ppppp/8/2p5/4P3/8/PPPP1PPP/RNBQKBNR w")


def test_find_node_returns_none_for_dangling_paths(tree):
    tree.add_move((), "e2e4")
    assert tree.find_node((0,)) is not None
    assert tree.find_node((1,)) is None
    assert tree.find_node((0, 0)) is None
    with pytest.raises(InvalidPositionError):
        tree.node_at((3,))


def test_illegal_move_is_rejected(tree):
    with pytest.raises(InvalidPositionError):
        tree.add_move((), "e2e5")


def test_invalid_root_fen_is_rejected(positions):
    with pytest.raises(InvalidPositionError):
        MoveTree("not a fen", positions)


def test_walk_is_preorder_in_child_order(tree):
    e4, _ = tree.add_move((), "e2e4")
    d4, _ = tree.add_move((), "d2d4")
    tree.add_move(e4, "e7e5")
    tree.add_move(e4, "c7c5")
    tree.add_move(d4, "d7d5")
    visited = [path_key(path) for path, _ in tree.walk()]
    assert visited == ["", "0", "0,0", "0,1", "1", "1,0"]
    assert len(tree) == 6
    assert [path_key(p) for p, _ in tree.walk(start=d4)] == ["1", "1,0"]
