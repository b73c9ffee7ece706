# repertoire_builder/core/move_tree.py
"""
The branching position tree and its integer-path addressing.

A `MoveTree` owns a synthetic root node holding the starting (or setup)
position. Every other node is one ply: the move in SAN and UCI form plus the
FEN it produces. Child 0 of any node is its mainline continuation; higher
indices are sibling variations.

Nodes are addressed by paths: tuples of child indices read from the root. Paths
are positional, so an edit upstream of a path can invalidate it. This core only
ever appends children, which keeps every existing path valid for the lifetime of
a build run.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

from repertoire_builder.exceptions import InvalidPositionError
from repertoire_builder.types import FEN, SAN, UCI, PathKey, PositionService, TreePath


@dataclass
class MoveNode:
    """One ply in the game tree. `san` and `uci` are None only for the root."""
    fen: FEN
    san: Optional[SAN] = None
    uci: Optional[UCI] = None
    children: List["MoveNode"] = field(default_factory=list)
    comment: str = ""
    annotations: List[str] = field(default_factory=list)

    def child_index_for_san(self, san: SAN) -> int:
        """Returns the index of the child played with `san`, or -1."""
        for index, child in enumerate(self.children):
            if child.san == san:
                return index
        return -1


def path_key(path: Sequence[int]) -> PathKey:
    """Renders a path as a stable string key, e.g. (0, 2, 1) -> "0,2,1"."""
    return ",".join(str(index) for index in path)


class MoveTree:
    """A recursive, path-addressed tree of chess positions."""

    def __init__(self, root_fen: FEN, positions: PositionService):
        if not positions.is_valid(root_fen):
            raise InvalidPositionError(f"Cannot root a move tree at invalid FEN '{root_fen}'.")
        self._positions = positions
        self.root = MoveNode(fen=root_fen.strip())

    def find_node(self, path: Sequence[int]) -> Optional[MoveNode]:
        """Resolves a path, returning None if any prefix does not exist."""
        node = self.root
        for index in path:
            if index < 0 or index >= len(node.children):
                return None
            node = node.children[index]
        return node

    def node_at(self, path: Sequence[int]) -> MoveNode:
        """Resolves a path, raising `InvalidPositionError` for a dangling path."""
        node = self.find_node(path)
        if node is None:
            raise InvalidPositionError(f"No node at path [{path_key(path)}].")
        return node

    def add_move(self, path: Sequence[int], move: UCI, mainline: bool = False) -> Tuple[TreePath, bool]:
        """
        Plays `move` from the node at `path`.

        If the node already has a child with the same SAN, that child is reused.
        Otherwise a new child is appended as the last variation, or inserted at
        index 0 when `mainline` is set. A move added to a childless node becomes
        its mainline either way.

        Args:
            path: Path of the parent node.
            move: The move in UCI notation; must be legal in the parent position.
            mainline: Whether a newly created child should become child 0.

        Returns:
            A tuple of the child's path and whether a new node was created.
        """
        parent = self.node_at(path)
        san = self._positions.to_san(parent.fen, move)
        existing = parent.child_index_for_san(san)
        if existing != -1:
            return tuple(path) + (existing,), False

        child = MoveNode(fen=self._positions.apply(parent.fen, move), san=san, uci=move)
        if mainline:
            parent.children.insert(0, child)
            index = 0
        else:
            parent.children.append(child)
            index = len(parent.children) - 1
        return tuple(path) + (index,), True

    def walk(self, start: Sequence[int] = ()) -> Iterator[Tuple[TreePath, MoveNode]]:
        """
        Yields (path, node) pairs in pre-order, children in index order.

        Uses an explicit stack so deep trees do not hit the recursion limit.
        """
        first = self.node_at(start)
        stack: List[Tuple[TreePath, MoveNode]] = [(tuple(start), first)]
        while stack:
            path, node = stack.pop()
            yield path, node
            for index in range(len(node.children) - 1, -1, -1):
                stack.append((path + (index,), node.children[index]))

    def mainline(self) -> List[MoveNode]:
        """Returns the nodes along child 0 from the root, excluding the root."""
        nodes: List[MoveNode] = []
        node = self.root
        while node.children:
            node = node.children[0]
            nodes.append(node)
        return nodes

    def __len__(self) -> int:
        return sum(1 for _ in self.walk())
