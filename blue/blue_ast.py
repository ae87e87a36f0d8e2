"""
AST node classes for Blue programs.

Nodes are frozen dataclasses; every node keeps the token it was parsed from
(excluded from equality) and renders back to source with `to_string()`.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple, Union

from blue.blue_token import Token


def quote_string(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            out.append("\\\\")
        elif ch == '"':
            out.append('\\"')
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\r":
            out.append("\\r")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "#" and text.startswith("#{", i):
            out.append("\\#")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def _params_string(params, defaults) -> str:
    parts = []
    for p, d in zip(params, defaults):
        parts.append(p.value if d is None else f"{p.value} = {d.to_string()}")
    return ", ".join(parts)


def _comp_string(head: str, header_src: str, filter_src: Optional[str]) -> str:
    text = f"{head} for {header_src}"
    if filter_src is not None:
        text += f" if {filter_src}"
    return text


@dataclass(frozen=True)
class Node:
    token: Token = field(compare=False, repr=False)

    def to_string(self) -> str:
        raise NotImplementedError


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass(frozen=True)
class Program(Node):
    statements: Tuple[Statement, ...] = ()

    def to_string(self) -> str:
        return "\n".join(s.to_string() for s in self.statements)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Identifier(Expression):
    value: str

    def to_string(self) -> str:
        return self.value


@dataclass(frozen=True)
class NullLit(Expression):
    def to_string(self) -> str:
        return "null"


@dataclass(frozen=True)
class BooleanLit(Expression):
    value: bool

    def to_string(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class IntegerLit(Expression):
    value: int

    def to_string(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class BigIntegerLit(Expression):
    value: int

    def to_string(self) -> str:
        return f"{self.value}n"


@dataclass(frozen=True)
class FloatLit(Expression):
    value: float

    def to_string(self) -> str:
        text = format(Decimal(repr(self.value)), "f")
        return text if "." in text else text + ".0"


@dataclass(frozen=True)
class BigFloatLit(Expression):
    value: Decimal

    def to_string(self) -> str:
        text = format(self.value, "f")
        return (text if "." in text else text + ".0") + "n"


@dataclass(frozen=True)
class HexLit(Expression):
    value: int

    def to_string(self) -> str:
        return f"0x{self.value:X}"


@dataclass(frozen=True)
class OctalLit(Expression):
    value: int

    def to_string(self) -> str:
        return f"0o{self.value:o}"


@dataclass(frozen=True)
class BinaryLit(Expression):
    value: int

    def to_string(self) -> str:
        return f"0b{self.value:b}"


@dataclass(frozen=True)
class UIntegerLit(Expression):
    value: int

    def to_string(self) -> str:
        return f"0u{self.value}"


@dataclass(frozen=True)
class StringLit(Expression):
    """A string literal; `parts` holds text and parsed `#{...}` expressions."""
    value: str
    parts: Tuple[Union[str, Expression], ...] = ()

    def to_string(self) -> str:
        if not self.parts:
            return f'"{quote_string(self.value)}"'
        out = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(quote_string(part))
            else:
                out.append("#{" + part.to_string() + "}")
        return '"' + "".join(out) + '"'


@dataclass(frozen=True)
class ExecStringLit(Expression):
    value: str

    def to_string(self) -> str:
        return f"`{self.value}`"


@dataclass(frozen=True)
class RegexLit(Expression):
    pattern: str

    def to_string(self) -> str:
        return "r/" + self.pattern.replace("/", "\\/") + "/"


@dataclass(frozen=True)
class ListLit(Expression):
    elements: Tuple[Expression, ...] = ()

    def to_string(self) -> str:
        return "[" + ", ".join(e.to_string() for e in self.elements) + "]"


@dataclass(frozen=True)
class ListComp(Expression):
    """`[element for header if filter]`; the slices are parsed when evaluated."""
    element_src: str
    header_src: str
    filter_src: Optional[str] = None

    def to_string(self) -> str:
        return "[" + _comp_string(self.element_src, self.header_src, self.filter_src) + "]"


@dataclass(frozen=True)
class MapLit(Expression):
    keys: Tuple[Expression, ...] = ()
    values: Tuple[Expression, ...] = ()

    def to_string(self) -> str:
        pairs = ", ".join(f"{k.to_string()}: {v.to_string()}" for k, v in zip(self.keys, self.values))
        return "{" + pairs + "}"


@dataclass(frozen=True)
class MapComp(Expression):
    key_src: str
    value_src: str
    header_src: str
    filter_src: Optional[str] = None

    def to_string(self) -> str:
        head = f"{self.key_src}: {self.value_src}"
        return "{" + _comp_string(head, self.header_src, self.filter_src) + "}"


@dataclass(frozen=True)
class SetLit(Expression):
    elements: Tuple[Expression, ...] = ()

    def to_string(self) -> str:
        return "{" + ", ".join(e.to_string() for e in self.elements) + "}"


@dataclass(frozen=True)
class SetComp(Expression):
    element_src: str
    header_src: str
    filter_src: Optional[str] = None

    def to_string(self) -> str:
        return "{" + _comp_string(self.element_src, self.header_src, self.filter_src) + "}"


@dataclass(frozen=True)
class StructLit(Expression):
    names: Tuple[str, ...] = ()
    values: Tuple[Expression, ...] = ()

    def to_string(self) -> str:
        fields = ", ".join(f"{n}: {v.to_string()}" for n, v in zip(self.names, self.values))
        return "@{" + fields + "}"


@dataclass(frozen=True)
class FunctionLit(Expression):
    params: Tuple[Identifier, ...]
    defaults: Tuple[Optional[Expression], ...]
    body: "BlockStmt"

    def to_string(self) -> str:
        return f"fun({_params_string(self.params, self.defaults)}) {self.body.to_string()}"


@dataclass(frozen=True)
class PrefixExpr(Expression):
    operator: str
    right: Expression

    def to_string(self) -> str:
        sep = " " if self.operator.isalpha() else ""
        return f"({self.operator}{sep}{self.right.to_string()})"


@dataclass(frozen=True)
class InfixExpr(Expression):
    left: Expression
    operator: str
    right: Expression

    def to_string(self) -> str:
        return f"({self.left.to_string()} {self.operator} {self.right.to_string()})"


@dataclass(frozen=True)
class IfExpr(Expression):
    condition: Expression
    consequence: "BlockStmt"
    alternative: Optional["BlockStmt"] = None

    def to_string(self) -> str:
        text = f"if {self.condition.to_string()} {self.consequence.to_string()}"
        if self.alternative is not None:
            text += f" else {self.alternative.to_string()}"
        return text


@dataclass(frozen=True)
class MatchExpr(Expression):
    subject: Optional[Expression]
    conditions: Tuple[Expression, ...] = ()
    consequences: Tuple["BlockStmt", ...] = ()

    def to_string(self) -> str:
        head = "match " if self.subject is None else f"match {self.subject.to_string()} "
        arms = ", ".join(f"{c.to_string()} => {b.to_string()}"
                         for c, b in zip(self.conditions, self.consequences))
        return head + "{ " + arms + " }"


@dataclass(frozen=True)
class CallExpr(Expression):
    function: Expression
    arguments: Tuple[Expression, ...] = ()
    named: Tuple[Tuple[str, Expression], ...] = ()

    def to_string(self) -> str:
        args = [a.to_string() for a in self.arguments]
        args += [f"{n} = {v.to_string()}" for n, v in self.named]
        return f"{self.function.to_string()}({', '.join(args)})"


@dataclass(frozen=True)
class IndexExpr(Expression):
    left: Expression
    index: Expression
    member: bool = False

    def to_string(self) -> str:
        if self.member:
            name = self.index.value if isinstance(self.index, StringLit) else self.index.to_string()
            return f"{self.left.to_string()}.{name}"
        return f"({self.left.to_string()}[{self.index.to_string()}])"


@dataclass(frozen=True)
class ForExpr(Expression):
    """All loop forms: `for cond {}`, `for x in xs {}` and C-style headers."""
    condition: Optional[Expression]
    body: "BlockStmt"
    init: Optional[Statement] = None
    post: Optional[Expression] = None
    targets: Tuple[str, ...] = ()
    iterable: Optional[Expression] = None
    destructure: bool = False

    def to_string(self) -> str:
        if self.iterable is not None:
            target = f"[{', '.join(self.targets)}]" if self.destructure else self.targets[0]
            return f"for {target} in {self.iterable.to_string()} {self.body.to_string()}"
        if self.init is not None or self.post is not None:
            init = self.init.to_string() if self.init is not None else ""
            cond = self.condition.to_string() if self.condition is not None else ""
            post = self.post.to_string() if self.post is not None else ""
            return f"for ({init}; {cond}; {post}) {self.body.to_string()}"
        return f"for {self.condition.to_string()} {self.body.to_string()}"


@dataclass(frozen=True)
class AssignmentExpr(Expression):
    target: Expression
    operator: str
    value: Expression

    def to_string(self) -> str:
        return f"({self.target.to_string()} {self.operator} {self.value.to_string()})"


@dataclass(frozen=True)
class EvalExpr(Expression):
    argument: Expression

    def to_string(self) -> str:
        return f"eval({self.argument.to_string()})"


@dataclass(frozen=True)
class SpawnExpr(Expression):
    arguments: Tuple[Expression, ...] = ()

    def to_string(self) -> str:
        return "spawn(" + ", ".join(a.to_string() for a in self.arguments) + ")"


@dataclass(frozen=True)
class SelfExpr(Expression):
    def to_string(self) -> str:
        return "self()"


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlockStmt(Statement):
    statements: Tuple[Statement, ...] = ()

    @property
    def declares(self) -> bool:
        """True when the block binds names of its own and needs a child Env."""
        return any(isinstance(s, (VarStmt, ValStmt, FunctionStmt, ImportStmt)) for s in self.statements)

    def to_string(self) -> str:
        if not self.statements:
            return "{ }"
        return "{ " + "; ".join(s.to_string() for s in self.statements) + " }"


@dataclass(frozen=True)
class VarStmt(Statement):
    name: Identifier
    value: Expression
    operator: str = "="

    def to_string(self) -> str:
        return f"var {self.name.value} {self.operator} {self.value.to_string()}"


@dataclass(frozen=True)
class ValStmt(Statement):
    name: Identifier
    value: Expression

    def to_string(self) -> str:
        return f"val {self.name.value} = {self.value.to_string()}"


@dataclass(frozen=True)
class FunctionStmt(Statement):
    name: Identifier
    params: Tuple[Identifier, ...]
    defaults: Tuple[Optional[Expression], ...]
    body: BlockStmt

    def to_string(self) -> str:
        return f"fun {self.name.value}({_params_string(self.params, self.defaults)}) {self.body.to_string()}"


@dataclass(frozen=True)
class ReturnStmt(Statement):
    value: Optional[Expression] = None

    def to_string(self) -> str:
        return "return" if self.value is None else f"return {self.value.to_string()}"


@dataclass(frozen=True)
class ExpressionStmt(Statement):
    expression: Expression

    def to_string(self) -> str:
        return self.expression.to_string()


@dataclass(frozen=True)
class ImportStmt(Statement):
    path: str

    @property
    def binding(self) -> str:
        return self.path.rsplit(".", 1)[-1]

    def to_string(self) -> str:
        return f"import {self.path}"


@dataclass(frozen=True)
class TryCatchStmt(Statement):
    body: BlockStmt
    catch_name: Optional[str] = None
    catch_body: Optional[BlockStmt] = None
    finally_body: Optional[BlockStmt] = None

    def to_string(self) -> str:
        text = f"try {self.body.to_string()}"
        if self.catch_body is not None:
            name = f"({self.catch_name}) " if self.catch_name else ""
            text += f" catch {name}{self.catch_body.to_string()}"
        if self.finally_body is not None:
            text += f" finally {self.finally_body.to_string()}"
        return text


@dataclass(frozen=True)
class BreakStmt(Statement):
    def to_string(self) -> str:
        return "break"


@dataclass(frozen=True)
class ContinueStmt(Statement):
    def to_string(self) -> str:
        return "continue"
