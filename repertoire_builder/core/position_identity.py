# repertoire_builder/core/position_identity.py
"""
Canonicalizes FEN strings into transposition keys.

Two positions reached by different move orders are interchangeable for tree
expansion when they agree on piece placement, side to move, castling rights and
the en-passant target. The halfmove clock and fullmove number do not change the
set of legal continuations, so they are dropped from the key.
"""

from repertoire_builder.types import FEN, IdentityKey

# Placement, active color, castling availability, en-passant target square.
_IDENTITY_FIELDS = 4


def canonicalize(fen: FEN) -> IdentityKey:
    """
    Reduces a FEN to its position identity key.

    Args:
        fen: A FEN string, possibly with irregular whitespace.

    Returns:
        The first four FEN fields joined by single spaces. A string with fewer
        fields is returned trimmed, so the function is total.
    """
    parts = fen.split()
    if len(parts) >= _IDENTITY_FIELDS:
        return " ".join(parts[:_IDENTITY_FIELDS])
    return fen.strip()
