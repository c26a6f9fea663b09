from __future__ import annotations
from dataclasses import dataclass
from typing import List

from lark import Lark
from lark.exceptions import UnexpectedCharacters

from .errors import LexError

# Terminals only; the single rule exists so lark keeps every terminal when
# the grammar is compiled. Parsing proper happens in parser.py.
GRAMMAR = r"""
start: _tok*
_tok: ARROW | FAT_ARROW | AND | OR | THROTTLE | FINALLY | RECOVER | CATCH
    | STREAM | DEBOUNCE | TILDE | BROADCAST | CIRCUIT | AT | HASH | CARET
    | AMP | PIPE | QMARK | STAR | PLUS | LBRACK | RBRACK | LBRACE | RBRACE
    | LPAREN | RPAREN | LANGLE | RANGLE | COLON | COMMA | EQUALS | SEMI
    | DURATION | NUMBER | IDENT | ANNOTATION | NEWLINE

ARROW: "->"
FAT_ARROW: "=>"
AND: "&&"
OR: "||"
THROTTLE: "&|"
FINALLY: "!!"
RECOVER: "!?"
CATCH: "!"
STREAM: "~>"
DEBOUNCE: "~|"
TILDE: "~"
BROADCAST: ">>"
CIRCUIT: "@@"
AT: "@"
HASH: "#"
CARET: "^"
AMP: "&"
PIPE: "|"
QMARK: "?"
STAR: "*"
PLUS: "+"
LBRACK: "["
RBRACK: "]"
LBRACE: "{"
RBRACE: "}"
LPAREN: "("
RPAREN: ")"
LANGLE: "<"
RANGLE: ">"
COLON: ":"
COMMA: ","
EQUALS: "="
SEMI: ";"
DURATION.3: /\d+(\.\d+)?(ms|s|m|h)(?![A-Za-z0-9_])/
NUMBER.2: /\d+(\.\d+)?/
IDENT: /[A-Za-z_][A-Za-z0-9_]*/
ANNOTATION: /"(\\.|[^"\\\n])*"/
NEWLINE: /\n/

LINE_COMMENT: /\/\/[^\n]*/
BLOCK_COMMENT: /\/\*(.|\n)*?\*\//
WS: /[ \t\r\f]+/
%ignore LINE_COMMENT
%ignore BLOCK_COMMENT
%ignore WS
"""

_lexer = None


def _load_lexer() -> Lark:
    global _lexer
    if _lexer is None:
        _lexer = Lark(GRAMMAR, start="start", parser="lalr", lexer="basic")
    return _lexer


@dataclass(frozen=True)
class Token:
    kind: str
    lexeme: str
    position: int
    line: int = 0
    column: int = 0

    @property
    def text(self) -> str:
        """Lexeme with annotation quotes and escapes removed."""
        if self.kind == "ANNOTATION":
            return self.lexeme[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        return self.lexeme


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    try:
        for tok in _load_lexer().lex(source):
            tokens.append(Token(tok.type, str(tok), tok.start_pos, tok.line, tok.column))
    except UnexpectedCharacters as e:
        char = source[e.pos_in_stream] if e.pos_in_stream < len(source) else ""
        raise LexError(e.pos_in_stream, f"Unrecognized character {char!r}", e.line, e.column) from e
    line = source.count("\n") + 1
    column = len(source) - (source.rfind("\n") + 1) + 1
    tokens.append(Token("EOF", "", len(source), line, column))
    return tokens
