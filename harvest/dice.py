"""Dice formula evaluation.

Grammar (whitespace ignored)::

    expr    := term (("+" | "-") term)*
    term    := factor (("*" | "/") factor)*
    factor  := ("+" | "-") factor | "(" expr ")" | dice | integer | @binding
    dice    := [count] "d" (sides | "%") [("kh" | "kl" | "dh" | "dl") n]

Division is integer floor division. ``@name`` is replaced by the matching
entry of the bindings passed to :meth:`DiceRoller.roll_formula`.
"""
import random
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

_TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<dice>\d*[dD](?:\d+|%)(?:(?:kh|kl|dh|dl)\d+)?)"
    r"|(?P<num>\d+)"
    r"|(?P<var>@[A-Za-z_][A-Za-z0-9_.]*)"
    r"|(?P<op>[-+*/()])"
    r")"
)
_DICE_TERM_RE = re.compile(r"^(?P<count>\d*)[dD](?P<sides>\d+|%)(?P<kd>(?:kh|kl|dh|dl)\d+)?$")

MAX_DICE = 100
MAX_SIDES = 1000


class DiceError(ValueError):
    """The formula can't be parsed or evaluated."""


@dataclass
class DiceTerm:
    count: int
    sides: int
    keep_drop: Optional[str] = None
    keep_drop_n: Optional[int] = None
    rolls: List[int] = field(default_factory=list)
    kept: List[int] = field(default_factory=list)

    @property
    def subtotal(self) -> int:
        return sum(self.kept)


@dataclass
class RollResult:
    formula: str
    total: int
    terms: List[DiceTerm] = field(default_factory=list)


def tokenize(formula: str) -> List[Tuple[str, str]]:
    text = (formula or "").strip()
    if not text:
        raise DiceError("empty formula")
    tokens = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise DiceError(f"unexpected input at {pos}: {text[pos:]!r}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
        # trailing whitespace
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


def parse_dice_term(token: str) -> DiceTerm:
    m = _DICE_TERM_RE.match(token)
    if not m:
        raise DiceError(f"unsupported dice term: {token}")

    count = int(m.group("count")) if m.group("count") else 1
    sides = 100 if m.group("sides") == "%" else int(m.group("sides"))
    kd = m.group("kd")
    keep_drop = kd[:2].lower() if kd else None
    keep_drop_n = int(kd[2:]) if kd else None

    if count < 1 or count > MAX_DICE:
        raise DiceError("dice count out of range")
    if sides < 2 or sides > MAX_SIDES:
        raise DiceError("dice sides out of range")
    if keep_drop is not None and (keep_drop_n < 1 or keep_drop_n > count):
        raise DiceError("keep/drop count out of range")
    return DiceTerm(count=count, sides=sides, keep_drop=keep_drop, keep_drop_n=keep_drop_n)


def apply_keep_drop(rolls: List[int], keep_drop: Optional[str], n: Optional[int]) -> List[int]:
    if not keep_drop or not n:
        return list(rolls)
    indexed = list(enumerate(rolls))
    ascending = sorted(indexed, key=lambda t: (t[1], t[0]))
    descending = sorted(indexed, key=lambda t: (t[1], t[0]), reverse=True)
    if keep_drop == "kh":
        keep_idx = {i for i, _ in descending[:n]}
    elif keep_drop == "kl":
        keep_idx = {i for i, _ in ascending[:n]}
    elif keep_drop == "dh":
        keep_idx = {i for i, _ in indexed} - {i for i, _ in descending[:n]}
    else:
        keep_idx = {i for i, _ in indexed} - {i for i, _ in ascending[:n]}
    return [v for i, v in indexed if i in keep_idx]


class _Evaluator:
    def __init__(self, tokens, bindings, rng):
        self.tokens = tokens
        self.pos = 0
        self.bindings = bindings
        self.rng = rng
        self.terms: List[DiceTerm] = []

    def peek(self):
        return self.tokens[self.pos] if self.pos < len(self.tokens) else (None, None)

    def take(self):
        token = self.peek()
        self.pos += 1
        return token

    def run(self) -> int:
        value = self.expr()
        if self.pos != len(self.tokens):
            raise DiceError(f"unexpected token {self.peek()[1]!r}")
        return value

    def expr(self) -> int:
        value = self.term()
        while self.peek() in (("op", "+"), ("op", "-")):
            _, op = self.take()
            rhs = self.term()
            value = value + rhs if op == "+" else value - rhs
        return value

    def term(self) -> int:
        value = self.factor()
        while self.peek() in (("op", "*"), ("op", "/")):
            _, op = self.take()
            rhs = self.factor()
            if op == "*":
                value *= rhs
            elif rhs == 0:
                raise DiceError("division by zero")
            else:
                value //= rhs
        return value

    def factor(self) -> int:
        kind, text = self.take()
        if kind is None:
            raise DiceError("formula ends unexpectedly")
        if kind == "op" and text in "+-":
            value = self.factor()
            return value if text == "+" else -value
        if kind == "op" and text == "(":
            value = self.expr()
            if self.take() != ("op", ")"):
                raise DiceError("unbalanced parentheses")
            return value
        if kind == "num":
            return int(text)
        if kind == "var":
            name = text[1:]
            if name not in self.bindings:
                raise DiceError(f"no value bound for @{name}")
            try:
                return int(self.bindings[name])
            except (TypeError, ValueError):
                raise DiceError(f"@{name} is not a number") from None
        if kind == "dice":
            term = parse_dice_term(text)
            term.rolls = [self.rng.randint(1, term.sides) for _ in range(term.count)]
            term.kept = apply_keep_drop(term.rolls, term.keep_drop, term.keep_drop_n)
            self.terms.append(term)
            return term.subtotal
        raise DiceError(f"unexpected token {text!r}")


def evaluate(formula: str, bindings: Optional[Dict[str, float]] = None, rng=None) -> RollResult:
    evaluator = _Evaluator(tokenize(str(formula)), bindings or {}, rng or random)
    total = evaluator.run()
    return RollResult(formula=str(formula), total=total, terms=evaluator.terms)


class DiceRoller:
    """The roll capability handed to harvest sessions."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def roll_formula(self, formula: str, bindings: Optional[Dict[str, float]] = None) -> RollResult:
        return evaluate(formula, bindings, self.rng)
