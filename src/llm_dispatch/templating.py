"""Mini template language for prompt bodies.

Supported syntax:

    {{name}}                          variable
    {{#if name}}...{{/if}}            conditional
    {{#if name}}...{{else}}...{{/if}} conditional with else branch
    {{#each items}}...{{this}}...{{/each}}   loop, {{this}} is the item

Templates are tokenized and parsed into a small tree of Text / Var / If /
Each nodes, then rendered against a variables mapping. Blocks nest freely;
an unbalanced block raises TemplateSyntaxError.

Truthiness is "non-empty": None, False, 0, "", "0" and empty collections
select the else branch. Lists and mappings render as JSON.
"""

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import TemplateSyntaxError

RESERVED_WORDS = frozenset({"if", "else", "each", "this"})

_TAG_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_NAME_RE = re.compile(r"^\w+$")
_OPEN_RE = re.compile(r"^#(if|each)\s+(\w+)$")
_CLOSE_RE = re.compile(r"^/(if|each)$")


# =============================================================================
# Tokens and nodes
# =============================================================================


@dataclass(frozen=True)
class Token:
    """A lexical unit: text, var, open, else or close."""

    kind: str
    value: str
    block: str = ""
    position: int = 0


@dataclass
class Text:
    value: str


@dataclass
class Var:
    name: str


@dataclass
class If:
    name: str
    then: List["Node"] = field(default_factory=list)
    otherwise: List["Node"] = field(default_factory=list)


@dataclass
class Each:
    name: str
    body: List["Node"] = field(default_factory=list)


Node = Union[Text, Var, If, Each]


def tokenize(source: str) -> List[Token]:
    """Split template source into tokens.

    ``{{...}}`` tags that are not valid syntax are kept as literal text.
    """
    tokens: List[Token] = []
    pos = 0
    for match in _TAG_RE.finditer(source):
        if match.start() > pos:
            tokens.append(Token("text", source[pos:match.start()], position=pos))
        tokens.append(_classify(match.group(1), match.group(0), match.start()))
        pos = match.end()
    if pos < len(source):
        tokens.append(Token("text", source[pos:], position=pos))
    return tokens


def _classify(inner: str, raw: str, position: int) -> Token:
    if inner == "else":
        return Token("else", "else", position=position)
    opening = _OPEN_RE.match(inner)
    if opening:
        return Token("open", opening.group(2), block=opening.group(1), position=position)
    closing = _CLOSE_RE.match(inner)
    if closing:
        return Token("close", "", block=closing.group(1), position=position)
    if _NAME_RE.match(inner):
        return Token("var", inner, position=position)
    return Token("text", raw, position=position)


def parse(source: str) -> List[Node]:
    """Parse template source into a node tree.

    Raises:
        TemplateSyntaxError: On unbalanced or misplaced block tags
    """
    return list(_parse_cached(source))


@lru_cache(maxsize=256)
def _parse_cached(source: str) -> Tuple[Node, ...]:
    root: List[Node] = []
    # Stack of (block node, list currently receiving children)
    stack: List[Tuple[Union[If, Each], List[Node]]] = []
    current = root

    for token in tokenize(source):
        if token.kind == "text":
            current.append(Text(token.value))
        elif token.kind == "var":
            current.append(Var(token.value))
        elif token.kind == "open":
            node: Union[If, Each] = If(token.value) if token.block == "if" else Each(token.value)
            current.append(node)
            current = node.then if isinstance(node, If) else node.body
            stack.append((node, current))
        elif token.kind == "else":
            if not stack or not isinstance(stack[-1][0], If):
                raise TemplateSyntaxError(f"{{{{else}}}} outside of an if block at offset {token.position}")
            node, branch = stack[-1]
            if branch is node.otherwise:
                raise TemplateSyntaxError(f"Duplicate {{{{else}}}} at offset {token.position}")
            current = node.otherwise
            stack[-1] = (node, current)
        elif token.kind == "close":
            if not stack:
                raise TemplateSyntaxError(
                    f"Unexpected {{{{/{token.block}}}}} at offset {token.position}"
                )
            node, _ = stack.pop()
            expected = "if" if isinstance(node, If) else "each"
            if token.block != expected:
                raise TemplateSyntaxError(
                    f"Expected {{{{/{expected}}}}} but found {{{{/{token.block}}}}} "
                    f"at offset {token.position}"
                )
            current = stack[-1][1] if stack else root

    if stack:
        open_node = stack[-1][0]
        kind = "if" if isinstance(open_node, If) else "each"
        raise TemplateSyntaxError(f"Unclosed {{{{#{kind} {open_node.name}}}}} block")
    return tuple(root)


# =============================================================================
# Rendering
# =============================================================================


def is_truthy(value: Any) -> bool:
    """Non-empty truthiness: None, False, 0, "", "0" and empty collections are false."""
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return value not in ("", "0")
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (list, tuple, dict, set, frozenset)):
        return len(value) > 0
    return True


def stringify(value: Any) -> str:
    """Render a value for substitution.

    Scalars are stringified, lists and mappings serialized as JSON, anything
    else (including None) renders as an empty string.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return ""


def _lookup(name: str, variables: Mapping[str, Any], this: Any, has_this: bool) -> Any:
    if name == "this":
        return this if has_this else None
    return variables.get(name)


def _iterate(value: Any) -> Iterable[Any]:
    if isinstance(value, (list, tuple)):
        return value
    if isinstance(value, dict):
        return value.values()
    return ()


def _render_nodes(
    nodes: Iterable[Node],
    variables: Mapping[str, Any],
    this: Any = None,
    has_this: bool = False,
) -> str:
    parts: List[str] = []
    for node in nodes:
        if isinstance(node, Text):
            parts.append(node.value)
        elif isinstance(node, Var):
            parts.append(stringify(_lookup(node.name, variables, this, has_this)))
        elif isinstance(node, If):
            branch = node.then if is_truthy(_lookup(node.name, variables, this, has_this)) else node.otherwise
            parts.append(_render_nodes(branch, variables, this, has_this))
        elif isinstance(node, Each):
            for item in _iterate(_lookup(node.name, variables, this, has_this)):
                parts.append(_render_nodes(node.body, variables, item, True))
    return "".join(parts)


def render(source: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Render template source against ``variables``.

    Args:
        source: Template text
        variables: Values for ``{{name}}`` and block tags

    Returns:
        Rendered text

    Raises:
        TemplateSyntaxError: If the template blocks are unbalanced
    """
    return _render_nodes(parse(source), variables or {})


def required_variables(*sources: str) -> List[str]:
    """Names a caller must supply to render the given sources.

    Collects ``{{name}}`` variables and ``{{#each name}}`` loop sources in
    first-seen order, excluding reserved words. Names used only in
    ``{{#if name}}`` are optional, since a missing value selects the else
    branch.
    """
    seen: List[str] = []
    for source in sources:
        if not source:
            continue
        for token in tokenize(source):
            if token.kind == "var" or (token.kind == "open" and token.block == "each"):
                name = token.value
                if name not in RESERVED_WORDS and name not in seen:
                    seen.append(name)
    return seen
