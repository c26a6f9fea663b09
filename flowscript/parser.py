from __future__ import annotations
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence as Seq, Tuple, Union

from .ast import (
    Atomic, Barrier, Branch, BranchCase, Broadcast, Catch, CircuitBreaker, CircuitPolicy, Debounce,
    Detach, EventStream, Guard, Label, Loop, Node, NodeMeta, Parallel, Quantifier, Race, Ref, Retry,
    RetryPolicy, Saga, Sequence, StateMachine, Throttle, Timeout, TimeoutPolicy, Transition, with_meta,
)
from .errors import ParseError
from .lexer import Token, tokenize
from .types import CatchMode, RefKind, RetryStrategy

_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_TERMINATORS = ("NEWLINE", "SEMI", "EOF")
_CATCH_OPS = {"CATCH": CatchMode.catch, "FINALLY": CatchMode.always, "RECOVER": CatchMode.recover}
_FORK_OPS = {"PIPE": Parallel, "AND": Barrier, "OR": Race}
_WRAPPERS = ("timeout", "circuit", "retry", "debounce", "throttle", "quantifier", "guard", "detach")


def parse_duration(tok: Token) -> float:
    text = tok.lexeme
    for unit in ("ms", "s", "m", "h"):
        if tok.kind == "DURATION" and text.endswith(unit):
            return float(text[: -len(unit)]) * _UNITS[unit]
    return float(text)


class Parser:
    """Recursive-descent parser producing one AST root per named flow.

    Statements are ``name = flow`` terminated by a newline or ``;``. Newlines
    are insignificant inside brackets and after a binary operator.
    """

    def __init__(self, tokens: Seq[Token]):
        self.tokens: List[Token] = list(tokens)
        if not self.tokens or self.tokens[-1].kind != "EOF":
            end = self.tokens[-1].position + len(self.tokens[-1].lexeme) if self.tokens else 0
            self.tokens.append(Token("EOF", "", end))
        self.pos = 0
        self._depth = 0
        self._bare_fork = True
        self._flow = ""
        self._counter = 0

    # ---------- token helpers ----------
    def _skippable(self, tok: Token) -> bool:
        return self._depth > 0 and tok.kind == "NEWLINE"

    def _peek(self, offset: int = 0) -> Token:
        i = self.pos
        seen = 0
        while True:
            tok = self.tokens[min(i, len(self.tokens) - 1)]
            if self._skippable(tok):
                i += 1
                continue
            if seen == offset or tok.kind == "EOF":
                return tok
            seen += 1
            i += 1

    def _at(self, *kinds: str) -> bool:
        return self._peek().kind in kinds

    def _advance(self) -> Token:
        while self._skippable(self.tokens[self.pos]):
            self.pos += 1
        tok = self.tokens[self.pos]
        if tok.kind != "EOF":
            self.pos += 1
        return tok

    def _skip_newlines(self):
        while self.tokens[self.pos].kind == "NEWLINE":
            self.pos += 1

    def _error(self, expected: str, tok: Optional[Token] = None) -> ParseError:
        tok = tok or self._peek()
        return ParseError(tok.position, expected, tok.lexeme or tok.kind, tok.line, tok.column)

    def _expect(self, kind: str, expected: Optional[str] = None) -> Token:
        if not self._at(kind):
            raise self._error(expected or kind)
        return self._advance()

    def _expect_close_angle(self):
        tok = self._peek()
        if tok.kind == "BROADCAST":
            # '>>' closing two nested races: consume one '>' and leave the other
            self._advance()
            self.pos -= 1
            self.tokens[self.pos] = Token("RANGLE", ">", tok.position + 1, tok.line, tok.column + 1)
            return
        self._expect("RANGLE", "'>'")

    def _id(self) -> str:
        self._counter += 1
        return f"{self._flow}/{self._counter}"

    # ---------- program ----------
    def parse_program(self) -> Dict[str, Node]:
        flows: Dict[str, Node] = {}
        while True:
            while self._at("NEWLINE", "SEMI"):
                self._advance()
            if self._at("EOF"):
                return flows
            name_tok = self._expect("IDENT", "flow name")
            if name_tok.lexeme in flows:
                raise self._error("unique flow name", name_tok)
            self._expect("EQUALS", "'='")
            self._skip_newlines()
            self._flow = name_tok.lexeme
            self._counter = 0
            flows[name_tok.lexeme] = self._sequence()
            if not self._at(*_TERMINATORS):
                raise self._error("end of statement")

    # ---------- precedence levels ----------
    def _sequence(self) -> Node:
        items = [self._fork()]
        while self._at("ARROW"):
            self._advance()
            self._skip_newlines()
            items.append(self._fork())
        if len(items) == 1:
            return items[0]
        if any(item.meta.compensation for item in items):
            return Saga(self._id(), tuple(items))
        return Sequence(self._id(), tuple(items))

    def _fork(self) -> Node:
        items = [self._stream()]
        op: Optional[str] = None
        kinds = ("PIPE", "AND", "OR") if self._bare_fork else ("AND", "OR")
        while self._at(*kinds):
            tok = self._advance()
            if op is not None and tok.kind != op:
                raise self._error(f"'{self._lexeme_of(op)}' (operators cannot be mixed without brackets)", tok)
            op = tok.kind
            self._skip_newlines()
            items.append(self._stream())
        if op is None:
            return items[0]
        node_type = _FORK_OPS[op]
        return node_type(self._id(), tuple(items))

    def _lexeme_of(self, kind: str) -> str:
        return {"PIPE": "|", "AND": "&&", "OR": "||"}[kind]

    def _stream(self) -> Node:
        node = self._handled()
        while True:
            if self._at("STREAM"):
                if not isinstance(node, Atomic) or node.meta != NodeMeta():
                    raise self._error("event source name before '~>'")
                self._advance()
                self._skip_newlines()
                node = EventStream(self._id(), node.name, self._handled())
            elif self._at("BROADCAST") and self._peek(1).kind == "LBRACK":
                self._advance()
                listeners = self._bracketed("LBRACK", "RBRACK", "COMMA")
                node = Broadcast(self._id(), node, tuple(listeners))
            else:
                return node

    def _handled(self) -> Node:
        node = self._postfix()
        while self._at(*_CATCH_OPS):
            mode = _CATCH_OPS[self._advance().kind]
            self._skip_newlines()
            node = Catch(self._id(), mode, node, self._postfix())
        return node

    # ---------- postfix modifiers ----------
    def _postfix(self) -> Node:
        node, tagged = self._primary()
        if tagged:
            return node
        mods: Dict[str, object] = {}

        def put(kind: str, value: object, tok: Token):
            if kind in mods:
                raise self._error(f"at most one {kind} modifier", tok)
            mods[kind] = value

        while True:
            tok = self._peek()
            k = tok.kind
            if k == "STAR":
                self._advance()
                put("quantifier", Quantifier(0, None), tok)
            elif k == "PLUS":
                self._advance()
                put("quantifier", Quantifier(1, None), tok)
            elif k == "QMARK" and self._peek(1).kind == "LBRACK":
                self._advance()
                put("guard", self._guard_spec(), tok)
            elif k == "QMARK":
                self._advance()
                put("quantifier", Quantifier(0, 1), tok)
            elif k == "LBRACE" and self._peek(1).kind == "NUMBER":
                put("quantifier", self._range_quantifier(), tok)
            elif k == "AT" and self._peek(1).kind == "NUMBER":
                self._advance()
                put("retry", self._retry_spec(), tok)
            elif k == "TILDE":
                self._advance()
                put("timeout", self._timeout_spec(), tok)
            elif k == "CIRCUIT":
                self._advance()
                put("circuit", self._circuit_spec(), tok)
            elif k == "DEBOUNCE":
                self._advance()
                put("debounce", self._duration(), tok)
            elif k == "THROTTLE":
                self._advance()
                put("throttle", self._duration(), tok)
            elif k == "CARET":
                self._advance()
                put("compensation", self._expect("IDENT", "compensation step name").lexeme, tok)
            elif k == "AMP":
                self._advance()
                put("detach", True, tok)
            elif k == "COLON" and self._peek(1).kind == "IDENT":
                self._advance()
                put("bind", self._advance().lexeme, tok)
            elif k == "ANNOTATION":
                self._advance()
                put("annotation", tok.text, tok)
            else:
                break
        if "debounce" in mods and "throttle" in mods:
            raise self._error("either debounce or throttle, not both")
        return self._wrap(node, mods)

    def _wrap(self, node: Node, mods: Dict[str, object]) -> Node:
        meta = node.meta
        extra = {k: mods[k] for k in ("compensation", "bind", "annotation") if k in mods}
        for key in extra:
            if getattr(meta, key) is not None:
                raise self._error(f"at most one {key} modifier")
        wrapped = any(k in mods for k in _WRAPPERS)
        if wrapped:
            # metadata (group, annotations) always sits on the outermost node
            node = replace(node, meta=NodeMeta())
        if "timeout" in mods:
            node = Timeout(self._id(), node, mods["timeout"])
        if "circuit" in mods:
            node = CircuitBreaker(self._id(), node, mods["circuit"])
        if "retry" in mods:
            node = Retry(self._id(), node, mods["retry"])
        if "debounce" in mods:
            node = Debounce(self._id(), node, mods["debounce"])
        if "throttle" in mods:
            node = Throttle(self._id(), node, mods["throttle"])
        if "quantifier" in mods:
            node = Loop(self._id(), node, mods["quantifier"])
        if "guard" in mods:
            predicate, negated = mods["guard"]
            node = Guard(self._id(), node, predicate, negated)
        if "detach" in mods:
            node = Detach(self._id(), node)
        if wrapped:
            node = replace(node, meta=meta)
        if extra:
            node = with_meta(node, **extra)
        return node

    def _duration(self) -> float:
        tok = self._peek()
        if tok.kind not in ("DURATION", "NUMBER"):
            raise self._error("duration")
        return parse_duration(self._advance())

    def _int(self, what: str) -> int:
        tok = self._expect("NUMBER", what)
        if "." in tok.lexeme:
            raise self._error(what, tok)
        return int(tok.lexeme)

    def _range_quantifier(self) -> Quantifier:
        self._expect("LBRACE")
        minimum = self._int("repeat count")
        maximum: Optional[int] = minimum
        if self._at("COMMA"):
            self._advance()
            maximum = self._int("repeat count") if self._at("NUMBER") else None
        self._expect("RBRACE", "'}'")
        if maximum is not None and maximum < minimum:
            raise self._error(f"maximum >= {minimum}")
        return Quantifier(minimum, maximum)

    def _guard_spec(self) -> Tuple[str, bool]:
        self._expect("LBRACK")
        negated = False
        if self._at("CATCH"):
            self._advance()
            negated = True
        name = self._expect("IDENT", "predicate name").lexeme
        self._expect("RBRACK", "']'")
        return name, negated

    def _retry_spec(self) -> RetryPolicy:
        attempts = self._int("attempt count")
        if attempts < 1:
            raise self._error("attempt count >= 1")
        if not (self._at("COLON") and self._peek(1).kind == "IDENT"
                and self._peek(1).lexeme in ("fixed", "linear", "exp", "exponential")):
            return RetryPolicy(attempts)
        self._advance()
        strategy = RetryStrategy.parse(self._advance().lexeme)
        base = multiplier = None
        if self._at("LPAREN"):
            self._advance()
            base = self._duration()
            if self._at("COMMA"):
                self._advance()
                multiplier = float(self._expect("NUMBER", "multiplier").lexeme)
            self._expect("RPAREN", "')'")
        return RetryPolicy(attempts, strategy, base, multiplier)

    def _timeout_spec(self) -> TimeoutPolicy:
        duration = self._duration()
        fallback = None
        if self._at("COLON") and self._peek(1).kind in ("IDENT", "AT"):
            self._advance()
            if self._at("AT"):
                self._advance()
                fallback = Ref(self._id(), self._expect("IDENT", "flow name").lexeme, RefKind.flow)
            else:
                fallback = Atomic(self._id(), self._advance().lexeme)
        return TimeoutPolicy(duration, fallback)

    def _circuit_spec(self) -> CircuitPolicy:
        self._expect("LBRACE", "'{'")
        threshold = self._int("failure threshold")
        cooldown = window = None
        if self._at("COMMA"):
            self._advance()
            cooldown = self._duration()
            if self._at("COMMA"):
                self._advance()
                window = self._duration()
        self._expect("RBRACE", "'}'")
        return CircuitPolicy(threshold, cooldown, window)

    # ---------- primaries ----------
    def _primary(self) -> Tuple[Node, bool]:
        """Returns the node and whether it was a ``(lane): flow`` tag, which
        consumes the rest of the sequence and so takes no modifiers."""
        tok = self._peek()
        k = tok.kind
        if k == "IDENT":
            if tok.lexeme == "machine" and self._peek(1).kind == "IDENT" and self._peek(2).kind == "LBRACE":
                return self._state_machine(), False
            self._advance()
            return Atomic(self._id(), tok.lexeme), False
        if k == "AT":
            self._advance()
            name = self._expect("IDENT", "flow name").lexeme
            return Ref(self._id(), name, RefKind.flow), False
        if k == "HASH":
            self._advance()
            name = self._expect("IDENT", "label name").lexeme
            if self._at("COLON"):
                self._advance()
                self._skip_newlines()
                body = self._postfix()
                return Label(self._id(), name, body), False
            return Ref(self._id(), name, RefKind.label), False
        if k == "LPAREN":
            return self._group()
        if k == "LBRACK":
            return Barrier(self._id(), tuple(self._bracketed("LBRACK", "RBRACK", "PIPE"))), False
        if k == "LANGLE":
            return Race(self._id(), tuple(self._bracketed("LANGLE", "RANGLE", "PIPE"))), False
        if k == "LBRACE":
            return self._branch(), False
        raise self._error("step")

    def _nested(self, parse, bare_fork: bool):
        saved = self._bare_fork
        self._bare_fork = bare_fork
        try:
            return parse()
        finally:
            self._bare_fork = saved

    def _bracketed(self, open_kind: str, close_kind: str, sep: str) -> List[Node]:
        self._expect(open_kind)
        self._depth += 1
        items = [self._nested(self._sequence, False)]
        while self._at(sep):
            self._advance()
            items.append(self._nested(self._sequence, False))
        self._depth -= 1
        if close_kind == "RANGLE":
            self._expect_close_angle()
        else:
            self._expect(close_kind, f"'{']' if close_kind == 'RBRACK' else '>'}'")
        return items

    def _group(self) -> Tuple[Node, bool]:
        self._expect("LPAREN")
        self._depth += 1
        if self._at("IDENT") and self._peek(1).kind == "COLON":
            lane = self._advance().lexeme
            self._advance()
            body = self._nested(self._sequence, True)
            self._depth -= 1
            self._expect("RPAREN", "')'")
            return with_meta(body, group=lane), False
        if self._at("IDENT") and self._peek(1).kind == "RPAREN":
            # '(lane): flow' tags the remainder of the enclosing sequence
            lane_tok = self._advance()
            self._depth -= 1
            self._advance()
            if self._at("COLON"):
                self._advance()
                self._skip_newlines()
                return with_meta(self._sequence(), group=lane_tok.lexeme), True
            return Atomic(self._id(), lane_tok.lexeme), False
        body = self._nested(self._sequence, True)
        self._depth -= 1
        self._expect("RPAREN", "')'")
        return body, False

    def _branch(self) -> Branch:
        start = self._expect("LBRACE")
        self._depth += 1
        cases: List[BranchCase] = []
        default: Optional[Node] = None
        while not self._at("RBRACE"):
            predicate = False
            if self._at("QMARK"):
                self._advance()
                predicate = True
            label_tok = self._expect("IDENT", "branch case label")
            self._expect("COLON", "':'")
            body = self._nested(self._sequence, True)
            if label_tok.lexeme == "_" and not predicate:
                if default is not None:
                    raise self._error("a single '_' default case", label_tok)
                default = body
            else:
                cases.append(BranchCase(label_tok.lexeme, body, predicate))
            if self._at("COMMA"):
                self._advance()
            elif not self._at("RBRACE"):
                raise self._error("',' or '}'")
        self._depth -= 1
        self._expect("RBRACE", "'}'")
        if not cases and default is None:
            raise self._error("at least one branch case", start)
        return Branch(self._id(), tuple(cases), default)

    def _state_machine(self) -> StateMachine:
        self._advance()  # 'machine'
        name = self._expect("IDENT", "machine name").lexeme
        self._expect("LBRACE")
        self._depth += 1
        transitions: List[Transition] = []
        while not self._at("RBRACE"):
            source = self._expect("IDENT", "state").lexeme
            self._expect("COLON", "':'")
            event = self._expect("IDENT", "event").lexeme
            self._expect("FAT_ARROW", "'=>'")
            target = self._expect("IDENT", "state").lexeme
            transitions.append(Transition(source, event, target))
            if self._at("COMMA"):
                self._advance()
            elif not self._at("RBRACE"):
                raise self._error("',' or '}'")
        self._depth -= 1
        close = self._expect("RBRACE", "'}'")
        if not transitions:
            raise self._error("at least one transition", close)
        return StateMachine(self._id(), name, tuple(transitions))


def parse(source: Union[str, Path, Seq[Token]]) -> Dict[str, Node]:
    """Parse FlowScript source text, a ``Path`` to a source file, or an
    already tokenized stream into a mapping of flow name to AST root."""
    if isinstance(source, Path):
        source = source.read_text(encoding="utf-8")
    tokens = tokenize(source) if isinstance(source, str) else source
    return Parser(tokens).parse_program()
