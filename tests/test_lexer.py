"""
Tests for the FlowScript tokenizer.
"""
import pytest

from flowscript.errors import LexError
from flowscript.lexer import tokenize


def kinds(source):
    return [t.kind for t in tokenize(source)]


def test_simple_sequence():
    assert kinds("A -> B") == ["IDENT", "ARROW", "IDENT", "EOF"]


def test_longest_match_for_operators():
    assert kinds("A!!B!?C!D") == ["IDENT", "FINALLY", "IDENT", "RECOVER", "IDENT", "CATCH", "IDENT", "EOF"]
    assert kinds("a && b || c | d") == ["IDENT", "AND", "IDENT", "OR", "IDENT", "PIPE", "IDENT", "EOF"]
    assert kinds("A&|1s B& C@@{2} D@3") == [
        "IDENT", "THROTTLE", "DURATION", "IDENT", "AMP", "IDENT", "CIRCUIT", "LBRACE", "NUMBER", "RBRACE",
        "IDENT", "AT", "NUMBER", "EOF",
    ]
    assert kinds("s ~> A~|300ms~5s") == [
        "IDENT", "STREAM", "IDENT", "DEBOUNCE", "DURATION", "TILDE", "DURATION", "EOF",
    ]


def test_durations_and_numbers():
    toks = tokenize("300ms 1.5s 2m 1h 3 2.5")
    assert [(t.kind, t.lexeme) for t in toks[:-1]] == [
        ("DURATION", "300ms"), ("DURATION", "1.5s"), ("DURATION", "2m"), ("DURATION", "1h"),
        ("NUMBER", "3"), ("NUMBER", "2.5"),
    ]


def test_comments_are_discarded():
    assert kinds("A // trailing\n/* block\nspanning lines */ B") == ["IDENT", "NEWLINE", "IDENT", "EOF"]


def test_annotation_keeps_lexeme_verbatim():
    tok = tokenize('A "charge \\"card\\""')[1]
    assert tok.kind == "ANNOTATION"
    assert tok.lexeme == '"charge \\"card\\""'
    assert tok.text == 'charge "card"'


def test_positions_and_lines():
    toks = tokenize("main = A\n  -> B")
    arrow = toks[4]
    assert arrow.kind == "ARROW"
    assert arrow.position == 11
    assert arrow.line == 2
    assert arrow.column == 3


def test_eof_terminates_every_stream():
    assert kinds("") == ["EOF"]
    assert tokenize("A")[-1].position == 1


class TestLexErrors:
    def test_unknown_character(self):
        with pytest.raises(LexError) as exc:
            tokenize("A -> $B")
        assert exc.value.position == 5
        assert exc.value.line == 1

    def test_unterminated_annotation(self):
        with pytest.raises(LexError):
            tokenize('A "never closed')
