# tests/core/test_position_identity.py
import chess

from repertoire_builder.core.position_identity import canonicalize


def test_canonicalize_ignores_move_counters():
    a = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
    b = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 7 23"
    assert canonicalize(a) == canonicalize(b)
    assert canonicalize(a) == "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq -"


def test_canonicalize_is_idempotent_and_collapses_whitespace():
    key = canonicalize(chess.STARTING_FEN)
    assert canonicalize(key) == key
    assert canonicalize("  " + chess.STARTING_FEN.replace(" ", "   ") + " ") == key


def test_canonicalize_distinguishes_turn_castling_and_en_passant():
    base = "r3k2r/8/8/8/8/8/8/R3K2R w KQkq - 0 1"
    assert canonicalize(base) != canonicalize(base.replace(" w ", " b "))
    assert canonicalize(base) != canonicalize(base.replace("KQkq", "Kkq"))
    ep = "rnbqkbnr/ppp1pppp/8/3pP3/8/8/PPPP1PPP/RNBQKBNR w KQkq d6 0 3"
    assert canonicalize(ep) != canonicalize(ep.replace("d6", "-"))


def test_transposed_move_orders_share_a_key():
    one = chess.Board()
    for san in ("d4", "Nf6", "c4", "e6"):
        one.push_san(san)
    two = chess.Board()
    for san in ("c4", "e6", "d4", "Nf6"):
        two.push_san(san)
    assert canonicalize(one.fen()) == canonicalize(two.fen())


def test_canonicalize_is_total_for_short_input():
    assert canonicalize("  8/8/8/8 w ") == "8/8/8/8 w"
    assert canonicalize("") == ""
