"""
POI Classification Scheme

Loads the ordered classification table (``Active, Class_A, Class_B, Class_C,
Filter``) and compiles every active ``Filter`` expression into a typed
predicate tree once, at load time. Classification walks the rules in
ascending ``sequence`` order and stops at the first rule whose predicate is
true, so row order in the table is precedence (e.g. "Cafe" above "Bakery"
makes cafes win for features tagged as both).

Filter grammar::

    expr      := or_expr
    or_expr   := and_expr ( ("|" | "||" | "or") and_expr )*
    and_expr  := not_expr ( ("&" | "&&" | "and") not_expr )*
    not_expr  := ("!" | "not") not_expr | atom
    atom      := "(" expr ")"
               | ("is.na" | "is_null") "(" KEY ")"
               | KEY ("==" | "!=") STRING
               | KEY ("%in%" | "in") VALUESET
               | KEY "not" "in" VALUESET
    VALUESET  := ("c(" | "(" | "[") STRING ("," STRING)* (")" | "]")

Null handling is three-valued: ``==`` and ``!=`` against a missing value are
unknown, membership of a missing value is false, ``not`` keeps unknown
unknown, and ``and``/``or`` follow Kleene logic. Only a predicate that is
true matches. Keys absent from a feature are missing values.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Attribute keys needed regardless of the filters (chain detection, exemptions)
ALWAYS_KEYS = ("name", "operator", "brand", "origin")

SCHEME_COLUMNS = ["Active", "Class_A", "Class_B", "Class_C", "Filter"]

KEY_PATTERN = re.compile(r"^[a-z][a-z_:]*$")

_TOKEN_PATTERN = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>%in%|==|!=|&&|\|\||&|\||!|\(|\)|\[|\]|,)
      | (?P<ident>[A-Za-z_][A-Za-z0-9_.:]*)
    )
    """,
    re.VERBOSE,
)

_KEYWORDS = {"and", "or", "not", "in", "c", "is.na", "is_null"}


class SchemeError(ValueError):
    """Raised when the classification scheme cannot be compiled."""


def normalize_key(key: str) -> str:
    """Normalize an attribute key the same way for rules and features."""
    return key.strip().replace(":", "_")


def _is_missing(value) -> bool:
    if value is None or value is pd.NA:
        return True
    return isinstance(value, float) and math.isnan(value)


def _as_string_column(df: pd.DataFrame, key: str) -> pd.Series:
    if key in df.columns:
        return df[key].astype("string")
    return pd.Series(pd.NA, index=df.index, dtype="string")


# ---------------------------------------------------------------------------
# Predicate tree
# ---------------------------------------------------------------------------


class Predicate:
    """Node of a compiled filter expression.

    ``evaluate`` works on a single attribute mapping and returns
    True/False/None (None = unknown). ``mask`` evaluates a whole DataFrame
    into a nullable ``boolean`` Series with the same semantics.
    """

    def evaluate(self, attributes: Mapping[str, object]) -> Optional[bool]:
        raise NotImplementedError

    def mask(self, df: pd.DataFrame) -> pd.Series:
        raise NotImplementedError

    def keys(self) -> FrozenSet[str]:
        raise NotImplementedError


@dataclass(frozen=True)
class Compare(Predicate):
    key: str
    op: str
    value: str

    def evaluate(self, attributes):
        actual = attributes.get(self.key)
        if _is_missing(actual):
            return None
        equal = str(actual) == self.value
        return equal if self.op == "==" else not equal

    def mask(self, df):
        column = _as_string_column(df, self.key)
        result = column == self.value if self.op == "==" else column != self.value
        return result.astype("boolean")

    def keys(self):
        return frozenset([self.key])


@dataclass(frozen=True)
class Membership(Predicate):
    key: str
    values: FrozenSet[str]

    def evaluate(self, attributes):
        actual = attributes.get(self.key)
        if _is_missing(actual):
            return False
        return str(actual) in self.values

    def mask(self, df):
        column = _as_string_column(df, self.key)
        return column.isin(list(self.values)).fillna(False).astype("boolean")

    def keys(self):
        return frozenset([self.key])


@dataclass(frozen=True)
class IsNull(Predicate):
    key: str

    def evaluate(self, attributes):
        return _is_missing(attributes.get(self.key))

    def mask(self, df):
        return _as_string_column(df, self.key).isna().astype("boolean")

    def keys(self):
        return frozenset([self.key])


@dataclass(frozen=True)
class Not(Predicate):
    operand: Predicate

    def evaluate(self, attributes):
        value = self.operand.evaluate(attributes)
        return None if value is None else not value

    def mask(self, df):
        return ~self.operand.mask(df)

    def keys(self):
        return self.operand.keys()


@dataclass(frozen=True)
class And(Predicate):
    operands: Tuple[Predicate, ...]

    def evaluate(self, attributes):
        values = [operand.evaluate(attributes) for operand in self.operands]
        if any(value is False for value in values):
            return False
        if any(value is None for value in values):
            return None
        return True

    def mask(self, df):
        result = self.operands[0].mask(df)
        for operand in self.operands[1:]:
            result = result & operand.mask(df)
        return result

    def keys(self):
        return frozenset().union(*(operand.keys() for operand in self.operands))


@dataclass(frozen=True)
class Or(Predicate):
    operands: Tuple[Predicate, ...]

    def evaluate(self, attributes):
        values = [operand.evaluate(attributes) for operand in self.operands]
        if any(value is True for value in values):
            return True
        if any(value is None for value in values):
            return None
        return False

    def mask(self, df):
        result = self.operands[0].mask(df)
        for operand in self.operands[1:]:
            result = result | operand.mask(df)
        return result

    def keys(self):
        return frozenset().union(*(operand.keys() for operand in self.operands))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _tokenize(expression: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_PATTERN.match(text, pos)
        if match is None or match.end() == pos:
            raise SchemeError(f"Unexpected character {text[pos:pos + 1]!r} at {pos} in: {expression}")
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "string":
            value = re.sub(r"\\(.)", r"\1", value[1:-1])
        tokens.append((kind, value))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser turning a filter expression into a Predicate."""

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0
        # keys as written in the rule, before ":" normalization
        self.raw_keys = set()

    def parse(self) -> Predicate:
        if not self.tokens:
            raise SchemeError("Empty filter expression")
        predicate = self._or()
        if self.pos != len(self.tokens):
            raise SchemeError(
                f"Unexpected token {self.tokens[self.pos][1]!r} in: {self.expression}"
            )
        return predicate

    # -- token helpers --------------------------------------------------

    def _peek(self, offset: int = 0) -> Optional[Tuple[str, str]]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _accept(self, *values: str) -> bool:
        token = self._peek()
        if token is not None and token[0] != "string" and token[1] in values:
            self.pos += 1
            return True
        return False

    def _expect(self, *values: str) -> None:
        if not self._accept(*values):
            found = self._peek()
            raise SchemeError(
                f"Expected {' or '.join(values)} but found "
                f"{found[1] if found else 'end of expression'!r} in: {self.expression}"
            )

    def _string(self) -> str:
        token = self._peek()
        if token is None or token[0] != "string":
            raise SchemeError(f"Expected a quoted value in: {self.expression}")
        self.pos += 1
        return token[1]

    def _key(self) -> str:
        token = self._peek()
        if token is None or token[0] != "ident" or token[1] in _KEYWORDS:
            raise SchemeError(f"Expected an attribute key in: {self.expression}")
        if not KEY_PATTERN.match(token[1]):
            raise SchemeError(f"Invalid attribute key {token[1]!r} in: {self.expression}")
        self.pos += 1
        self.raw_keys.add(token[1])
        return normalize_key(token[1])

    # -- grammar ----------------------------------------------------------

    def _or(self) -> Predicate:
        operands = [self._and()]
        while self._accept("|", "||", "or"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def _and(self) -> Predicate:
        operands = [self._not()]
        while self._accept("&", "&&", "and"):
            operands.append(self._not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def _not(self) -> Predicate:
        if self._accept("!", "not"):
            return Not(self._not())
        return self._atom()

    def _atom(self) -> Predicate:
        if self._accept("("):
            predicate = self._or()
            self._expect(")")
            return predicate
        if self._accept("is.na", "is_null"):
            self._expect("(")
            key = self._key()
            self._expect(")")
            return IsNull(key)

        key = self._key()
        if self._accept("==", "!="):
            op = self.tokens[self.pos - 1][1]
            return Compare(key, op, self._string())
        if self._accept("%in%", "in"):
            return Membership(key, self._value_set())
        if self._accept("not"):
            self._expect("in")
            return Not(Membership(key, self._value_set()))
        raise SchemeError(f"Expected an operator after {key!r} in: {self.expression}")

    def _value_set(self) -> FrozenSet[str]:
        if self._accept("c"):
            self._expect("(")
            closing = ")"
        elif self._accept("("):
            closing = ")"
        elif self._accept("["):
            closing = "]"
        else:
            # a single quoted value is a one-element set
            return frozenset([self._string()])
        values = [self._string()]
        while self._accept(","):
            values.append(self._string())
        self._expect(closing)
        return frozenset(values)


def parse_filter(expression: str) -> Predicate:
    """Compile a filter expression into a predicate tree.

    Raises:
        SchemeError: If the expression does not parse.
    """
    return _compile(expression)[0]


def _compile(expression: str) -> Tuple[Predicate, FrozenSet[str]]:
    if not isinstance(expression, str):
        raise SchemeError(f"Filter expression must be a string, got {expression!r}")
    parser = _Parser(expression)
    predicate = parser.parse()
    return predicate, frozenset(parser.raw_keys)


# ---------------------------------------------------------------------------
# Rules and scheme
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassificationRule:
    """One active row of the classification table."""

    sequence: int
    class_a: str
    class_b: str
    class_c: str
    expression: str
    predicate: Predicate = field(compare=False, repr=False)
    raw_keys: FrozenSet[str] = field(default=frozenset(), compare=False, repr=False)


def _parse_active(value) -> bool:
    if _is_missing(value):
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"true", "t", "yes", "y", "1"}
    return bool(value)


class ClassificationScheme:
    """Ordered, compiled classification rules plus the Class_A hierarchy lookup.

    Usage::

        scheme = ClassificationScheme.from_csv("configs/classification_scheme.csv")
        scheme.classify_record({"amenity": "cafe"})          # -> "Cafe"
        features["Class_A"] = scheme.classify_frame(features)
    """

    def __init__(self, rules: Iterable[ClassificationRule]):
        self.rules: List[ClassificationRule] = sorted(rules, key=lambda rule: rule.sequence)
        self.hierarchy: Dict[str, Tuple[str, str]] = {}

        for rule in self.rules:
            path = (rule.class_b, rule.class_c)
            known = self.hierarchy.setdefault(rule.class_a, path)
            if known != path:
                raise SchemeError(
                    f"Class_A {rule.class_a!r} maps to both {known} and {path} "
                    f"(rule {rule.sequence})"
                )

    @classmethod
    def from_frame(cls, table: pd.DataFrame) -> "ClassificationScheme":
        """Compile a scheme from a DataFrame with the scheme columns.

        Only ``Active`` rows are used; their order in *table* is precedence.
        """
        missing = [col for col in SCHEME_COLUMNS if col not in table.columns]
        if missing:
            raise SchemeError(f"Classification scheme is missing columns: {missing}")

        rules = []
        for row in table.itertuples(index=False):
            if not _parse_active(row.Active):
                continue
            for col in ("Class_A", "Class_B", "Class_C"):
                if _is_missing(getattr(row, col)) or not str(getattr(row, col)).strip():
                    raise SchemeError(f"Active rule for {row.Class_A!r} has an empty {col}")
            try:
                predicate, raw_keys = _compile(row.Filter)
            except SchemeError as e:
                raise SchemeError(f"Rule {len(rules)} ({row.Class_A}): {e}") from e
            rules.append(
                ClassificationRule(
                    sequence=len(rules),
                    class_a=str(row.Class_A).strip(),
                    class_b=str(row.Class_B).strip(),
                    class_c=str(row.Class_C).strip(),
                    expression=row.Filter,
                    predicate=predicate,
                    raw_keys=raw_keys,
                )
            )

        if not rules:
            raise SchemeError("Classification scheme has no active rules")

        logger.info(f"Compiled {len(rules)} active classification rules")
        return cls(rules)

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "ClassificationScheme":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Classification scheme not found: {path}")
        logger.info(f"Loading classification scheme from {path}")
        return cls.from_frame(pd.read_csv(path, dtype={"Filter": str}))

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    @property
    def filter_keys(self) -> List[str]:
        """Attribute keys referenced by any active filter (normalized)."""
        keys = set()
        for rule in self.rules:
            keys |= rule.predicate.keys()
        return sorted(keys)

    @property
    def osm_keys(self) -> List[str]:
        """Filter keys as written in the rules (``addr:street``), for OSM queries."""
        keys = set()
        for rule in self.rules:
            keys |= rule.raw_keys
        return sorted(keys)

    @property
    def attribute_keys(self) -> List[str]:
        """Filter keys plus the keys every run needs (name, operator, brand, origin)."""
        return sorted(set(self.filter_keys) | set(ALWAYS_KEYS))

    @property
    def class_c_labels(self) -> List[str]:
        """Distinct Class_C labels in rule order."""
        return list(dict.fromkeys(class_c for _, class_c in self.hierarchy.values()))

    def lookup(self, class_a: str) -> Tuple[str, str]:
        """Return ``(Class_B, Class_C)`` for a Class_A label."""
        try:
            return self.hierarchy[class_a]
        except KeyError:
            raise KeyError(f"Class_A {class_a!r} is not part of the classification scheme") from None

    # -----------------------------------------------------------------
    # Classification
    # -----------------------------------------------------------------

    def classify_record(self, attributes: Mapping[str, object]) -> Optional[str]:
        """Return the Class_A of the first matching rule, or None."""
        normalized = {normalize_key(key): value for key, value in attributes.items()}
        for rule in self.rules:
            if rule.predicate.evaluate(normalized) is True:
                return rule.class_a
        return None

    def classify_frame(self, df: pd.DataFrame) -> pd.Series:
        """Vectorized first-match classification of every row of *df*.

        Column names must already be normalized (``:`` -> ``_``).

        Returns:
            Object Series of Class_A labels aligned to *df*, None where no
            rule matched.
        """
        labels: List[Optional[str]] = [None] * len(df)
        unassigned = pd.Series(True, index=df.index)
        for rule in self.rules:
            if not unassigned.any():
                break
            matched = rule.predicate.mask(df).fillna(False).astype(bool) & unassigned
            for position in matched.to_numpy().nonzero()[0]:
                labels[position] = rule.class_a
            unassigned &= ~matched
        return pd.Series(labels, index=df.index, dtype=object)

    def __len__(self) -> int:
        return len(self.rules)
