"""
A Pratt parser for Blue.

The parser never stops at the first problem: errors are collected in
`Parser.errors` and parsing resumes at the next statement boundary.
"""
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple

from blue import blue_ast as ast
from blue.blue_lexer import LexError, Lexer
from blue.blue_token import ASSIGN_OPERATORS, KEYWORDS, Token, TokenType

INT64_MAX = 2 ** 63 - 1
UINT64_LIMIT = 2 ** 64


class Precedence(IntEnum):
    LOWEST = 1
    ASSIGN = 2
    OR = 3
    AND = 4
    EQUALS = 5
    RELATIONAL = 6
    RANGE = 7
    BIT_OR = 8
    BIT_XOR = 9
    BIT_AND = 10
    SHIFT = 11
    SUM = 12
    PRODUCT = 13
    POWER = 14
    PREFIX = 15
    CALL = 16


PRECEDENCES: Dict[TokenType, Precedence] = {t: Precedence.ASSIGN for t in ASSIGN_OPERATORS}
PRECEDENCES.update({
    TokenType.OR: Precedence.OR,
    TokenType.AND: Precedence.AND,
    TokenType.EQ: Precedence.EQUALS,
    TokenType.NOT_EQ: Precedence.EQUALS,
    TokenType.LT: Precedence.RELATIONAL,
    TokenType.GT: Precedence.RELATIONAL,
    TokenType.LTEQ: Precedence.RELATIONAL,
    TokenType.GTEQ: Precedence.RELATIONAL,
    TokenType.IN: Precedence.RELATIONAL,
    TokenType.NOTIN: Precedence.RELATIONAL,
    TokenType.RANGE: Precedence.RANGE,
    TokenType.NONINCLUSIVE_RANGE: Precedence.RANGE,
    TokenType.PIPE: Precedence.BIT_OR,
    TokenType.CARET: Precedence.BIT_XOR,
    TokenType.AMP: Precedence.BIT_AND,
    TokenType.LSHIFT: Precedence.SHIFT,
    TokenType.RSHIFT: Precedence.SHIFT,
    TokenType.PLUS: Precedence.SUM,
    TokenType.MINUS: Precedence.SUM,
    TokenType.STAR: Precedence.PRODUCT,
    TokenType.SLASH: Precedence.PRODUCT,
    TokenType.FDIV: Precedence.PRODUCT,
    TokenType.PERCENT: Precedence.PRODUCT,
    TokenType.POW: Precedence.POWER,
    TokenType.LPAREN: Precedence.CALL,
    TokenType.LBRACKET: Precedence.CALL,
    TokenType.DOT: Precedence.CALL,
})

_BLOCK_STARTERS = frozenset({
    TokenType.VAR, TokenType.VAL, TokenType.CONST, TokenType.FUN, TokenType.RETURN,
    TokenType.IF, TokenType.FOR, TokenType.MATCH, TokenType.TRY, TokenType.BREAK,
    TokenType.CONTINUE, TokenType.IMPORT,
})


@dataclass(frozen=True)
class ParseError:
    message: str
    file_path: str
    line: int
    column: int
    kind: str = "ParserError"

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}\n{self.file_path}:{self.line}:{self.column}"


class ParseErrors(Exception):
    """Raised by `parse()` when the source had syntax errors."""

    def __init__(self, errors: List[ParseError]):
        super().__init__("\n".join(str(e) for e in errors))
        self.errors = errors


class _Bail(Exception):
    """Unwinds the current statement after an error has been recorded."""


def _describe(tok: Token) -> str:
    return "EOF" if tok.type == TokenType.EOF else repr(tok.literal)


def loop_targets(expr: ast.Expression) -> Optional[Tuple[Tuple[str, ...], bool, ast.Expression]]:
    """Splits `x in xs` / `[i, x] in xs` into (names, destructure, iterable)."""
    if not isinstance(expr, ast.InfixExpr) or expr.operator != "in":
        return None
    left = expr.left
    if isinstance(left, ast.Identifier):
        return (left.value,), False, expr.right
    if (isinstance(left, ast.ListLit) and 1 <= len(left.elements) <= 2
            and all(isinstance(e, ast.Identifier) for e in left.elements)):
        return tuple(e.value for e in left.elements), True, expr.right
    return None


class Parser:
    def __init__(self, lexer: Lexer):
        self.lexer = lexer
        self.errors: List[ParseError] = []
        self._lookahead: List[Token] = []
        self.cur = self._read()
        self.peek = self._read()

        self._prefix_fns: Dict[TokenType, Callable[[], ast.Expression]] = {
            TokenType.IDENT: self._parse_identifier,
            TokenType.INT: self._parse_number,
            TokenType.FLOAT: self._parse_number,
            TokenType.BIGINT: self._parse_number,
            TokenType.BIGFLOAT: self._parse_number,
            TokenType.HEX: self._parse_number,
            TokenType.OCTAL: self._parse_number,
            TokenType.BINARY: self._parse_number,
            TokenType.UINT: self._parse_number,
            TokenType.STRING: self._parse_string,
            TokenType.RAW_STRING: self._parse_string,
            TokenType.EXEC_STRING: lambda: ast.ExecStringLit(self.cur, self.cur.literal),
            TokenType.REGEX: self._parse_regex,
            TokenType.TRUE: lambda: ast.BooleanLit(self.cur, True),
            TokenType.FALSE: lambda: ast.BooleanLit(self.cur, False),
            TokenType.NULL: lambda: ast.NullLit(self.cur),
            TokenType.MINUS: self._parse_prefix,
            TokenType.BANG: self._parse_prefix,
            TokenType.NOT: self._parse_prefix,
            TokenType.TILDE: self._parse_prefix,
            TokenType.LPAREN: self._parse_grouped,
            TokenType.LBRACKET: self._parse_list,
            TokenType.LBRACE: self._parse_map_or_set,
            TokenType.STRUCT_LBRACE: self._parse_struct,
            TokenType.FUN: self._parse_function_literal,
            TokenType.PIPE: self._parse_lambda,
            TokenType.OR: self._parse_lambda,
            TokenType.IF: self._parse_if,
            TokenType.MATCH: self._parse_match,
            TokenType.FOR: self._parse_for,
            TokenType.EVAL: self._parse_eval,
            TokenType.SPAWN: self._parse_spawn,
            TokenType.SELF: self._parse_self,
        }
        self._infix_fns: Dict[TokenType, Callable[[ast.Expression], ast.Expression]] = {
            t: self._parse_assignment for t in ASSIGN_OPERATORS
        }
        for t in (TokenType.OR, TokenType.AND, TokenType.EQ, TokenType.NOT_EQ, TokenType.LT,
                  TokenType.GT, TokenType.LTEQ, TokenType.GTEQ, TokenType.IN, TokenType.NOTIN,
                  TokenType.RANGE, TokenType.NONINCLUSIVE_RANGE, TokenType.PIPE, TokenType.CARET,
                  TokenType.AMP, TokenType.LSHIFT, TokenType.RSHIFT, TokenType.PLUS,
                  TokenType.MINUS, TokenType.STAR, TokenType.SLASH, TokenType.FDIV,
                  TokenType.PERCENT, TokenType.POW):
            self._infix_fns[t] = self._parse_infix
        self._infix_fns[TokenType.LPAREN] = self._parse_call
        self._infix_fns[TokenType.LBRACKET] = self._parse_index
        self._infix_fns[TokenType.DOT] = self._parse_member

    # -- token stream --------------------------------------------------------

    def _read(self) -> Token:
        if self._lookahead:
            return self._lookahead.pop(0)
        try:
            return self.lexer.next_token()
        except LexError as e:
            self.errors.append(ParseError(e.message, e.file_path, e.line, e.column, kind="LexError"))
            end = len(self.lexer.source)
            return Token(TokenType.EOF, "", e.file_path, e.line, e.column, end, end, True)

    def _peek_ahead(self, n: int) -> Token:
        """The n-th token after `peek`."""
        while len(self._lookahead) < n:
            try:
                self._lookahead.append(self.lexer.next_token())
            except LexError as e:
                self.errors.append(ParseError(e.message, e.file_path, e.line, e.column, kind="LexError"))
                end = len(self.lexer.source)
                self._lookahead.append(Token(TokenType.EOF, "", e.file_path, e.line, e.column, end, end, True))
        return self._lookahead[n - 1]

    def _next(self):
        self.cur = self.peek
        self.peek = self._read()

    def _fail(self, message: str, tok: Token):
        self.errors.append(ParseError(message, tok.file_path, tok.line, tok.column))
        raise _Bail()

    def _expect_peek(self, tok_type: TokenType):
        if self.peek.type != tok_type:
            self._fail(f"expected next token to be {tok_type.value}, got {_describe(self.peek)} instead",
                       self.peek)
        self._next()

    def _peek_precedence(self) -> Precedence:
        return PRECEDENCES.get(self.peek.type, Precedence.LOWEST)

    def _source_slice(self, start: int) -> str:
        return self.lexer.source[start:self.cur.end]

    # -- statements ------------------------------------------------------------

    def parse_program(self) -> ast.Program:
        first = self.cur
        statements = []
        while self.cur.type != TokenType.EOF:
            stmt = self._parse_statement_recovering()
            if stmt is not None:
                statements.append(stmt)
            self._next()
        return ast.Program(first, tuple(statements))

    def _parse_statement_recovering(self) -> Optional[ast.Statement]:
        try:
            return self._parse_statement()
        except _Bail:
            self._synchronize()
            return None

    def _synchronize(self):
        """Skips ahead so that the next token starts a fresh statement."""
        depth = 0
        while self.cur.type != TokenType.EOF:
            if self.cur.type in (TokenType.LBRACE, TokenType.STRUCT_LBRACE):
                depth += 1
            elif self.cur.type == TokenType.RBRACE and depth > 0:
                depth -= 1
            if depth == 0:
                if self.cur.type == TokenType.SEMICOLON:
                    return
                if self.peek.type in (TokenType.RBRACE, TokenType.EOF) or self.peek.newline_before:
                    return
            self._next()

    def _parse_statement(self) -> Optional[ast.Statement]:
        match self.cur.type:
            case TokenType.SEMICOLON:
                return None
            case TokenType.VAR:
                stmt = self._parse_var()
            case TokenType.VAL | TokenType.CONST:
                stmt = self._parse_val()
            case TokenType.RETURN:
                stmt = self._parse_return()
            case TokenType.IMPORT:
                tok = self.cur
                self._expect_peek(TokenType.IMPORT_PATH)
                stmt = ast.ImportStmt(tok, self.cur.literal)
            case TokenType.TRY:
                stmt = self._parse_try()
            case TokenType.BREAK:
                stmt = ast.BreakStmt(self.cur)
            case TokenType.CONTINUE:
                stmt = ast.ContinueStmt(self.cur)
            case TokenType.FUN if self.peek.type == TokenType.IDENT:
                stmt = self._parse_function_statement()
            case TokenType.LBRACE if self._starts_block():
                stmt = self._parse_block()
            case _:
                tok = self.cur
                stmt = ast.ExpressionStmt(tok, self.parse_expression(Precedence.LOWEST))
        self._end_statement()
        return stmt

    def _end_statement(self):
        if self.peek.type == TokenType.SEMICOLON:
            self._next()
        elif not (self.peek.type in (TokenType.RBRACE, TokenType.EOF) or self.peek.newline_before):
            self._fail(f"unexpected {_describe(self.peek)} after statement", self.peek)

    def _starts_block(self) -> bool:
        # `{` at statement level is a map or set literal unless its first
        # token can only begin a statement.
        if self.peek.type in _BLOCK_STARTERS:
            return True
        return self.peek.type == TokenType.IDENT and self._peek_ahead(1).type in ASSIGN_OPERATORS

    def _parse_var(self) -> ast.VarStmt:
        tok = self.cur
        self._expect_peek(TokenType.IDENT)
        name = ast.Identifier(self.cur, self.cur.literal)
        if self.peek.type not in ASSIGN_OPERATORS:
            return ast.VarStmt(tok, name, ast.NullLit(self.cur))
        self._next()
        operator = self.cur.literal
        self._next()
        return ast.VarStmt(tok, name, self.parse_expression(Precedence.LOWEST), operator)

    def _parse_val(self) -> ast.ValStmt:
        tok = self.cur
        self._expect_peek(TokenType.IDENT)
        name = ast.Identifier(self.cur, self.cur.literal)
        self._expect_peek(TokenType.ASSIGN)
        self._next()
        return ast.ValStmt(tok, name, self.parse_expression(Precedence.LOWEST))

    def _parse_return(self) -> ast.ReturnStmt:
        tok = self.cur
        if self.peek.type in (TokenType.SEMICOLON, TokenType.RBRACE, TokenType.EOF) or self.peek.newline_before:
            return ast.ReturnStmt(tok)
        self._next()
        return ast.ReturnStmt(tok, self.parse_expression(Precedence.LOWEST))

    def _parse_try(self) -> ast.TryCatchStmt:
        tok = self.cur
        self._expect_peek(TokenType.LBRACE)
        body = self._parse_block()
        catch_name = catch_body = finally_body = None
        if self.peek.type == TokenType.CATCH:
            self._next()
            if self.peek.type == TokenType.LPAREN:
                self._next()
                self._expect_peek(TokenType.IDENT)
                catch_name = self.cur.literal
                self._expect_peek(TokenType.RPAREN)
            elif self.peek.type == TokenType.IDENT:
                self._next()
                catch_name = self.cur.literal
            self._expect_peek(TokenType.LBRACE)
            catch_body = self._parse_block()
        if self.peek.type == TokenType.FINALLY:
            self._next()
            self._expect_peek(TokenType.LBRACE)
            finally_body = self._parse_block()
        if catch_body is None and finally_body is None:
            self._fail("try requires a catch or finally block", self.peek)
        return ast.TryCatchStmt(tok, body, catch_name, catch_body, finally_body)

    def _parse_function_statement(self) -> ast.FunctionStmt:
        tok = self.cur
        self._next()
        name = ast.Identifier(self.cur, self.cur.literal)
        self._expect_peek(TokenType.LPAREN)
        params, defaults = self._parse_params(TokenType.RPAREN)
        self._expect_peek(TokenType.LBRACE)
        return ast.FunctionStmt(tok, name, params, defaults, self._parse_block())

    def _parse_block(self) -> ast.BlockStmt:
        tok = self.cur
        self._next()
        statements = []
        while self.cur.type != TokenType.RBRACE:
            if self.cur.type == TokenType.EOF:
                self._fail("expected '}' to close block, got EOF", self.cur)
            stmt = self._parse_statement_recovering()
            if stmt is not None:
                statements.append(stmt)
            self._next()
        return ast.BlockStmt(tok, tuple(statements))

    def _parse_params(self, end: TokenType, default_precedence=Precedence.LOWEST):
        params: List[ast.Identifier] = []
        defaults: List[Optional[ast.Expression]] = []
        if self.peek.type == end:
            self._next()
            return (), ()
        seen_default = False
        while True:
            self._expect_peek(TokenType.IDENT)
            param = ast.Identifier(self.cur, self.cur.literal)
            default = None
            if self.peek.type == TokenType.ASSIGN:
                self._next()
                self._next()
                default = self.parse_expression(default_precedence)
                seen_default = True
            elif seen_default:
                self._fail(f"parameter '{param.value}' without a default follows a defaulted parameter",
                           param.token)
            params.append(param)
            defaults.append(default)
            if self.peek.type == TokenType.COMMA:
                self._next()
                continue
            self._expect_peek(end)
            return tuple(params), tuple(defaults)

    # -- expressions -------------------------------------------------------------

    def parse_expression(self, precedence: Precedence) -> ast.Expression:
        prefix = self._prefix_fns.get(self.cur.type)
        if prefix is None:
            self._fail(f"no prefix parse function for {_describe(self.cur)} found", self.cur)
        left = prefix()
        while self.peek.type != TokenType.SEMICOLON and precedence < self._peek_precedence():
            # A `(` or `[` opening a new line starts a new statement.
            if self.peek.type in (TokenType.LPAREN, TokenType.LBRACKET) and self.peek.newline_before:
                break
            infix = self._infix_fns.get(self.peek.type)
            if infix is None:
                break
            self._next()
            left = infix(left)
        return left

    def _parse_identifier(self) -> ast.Identifier:
        return ast.Identifier(self.cur, self.cur.literal)

    def _parse_number(self) -> ast.Expression:
        tok = self.cur
        text = tok.literal.replace("_", "")
        match tok.type:
            case TokenType.INT:
                value = int(text)
                return ast.IntegerLit(tok, value) if value <= INT64_MAX else ast.BigIntegerLit(tok, value)
            case TokenType.BIGINT:
                return ast.BigIntegerLit(tok, int(text))
            case TokenType.FLOAT:
                value = float(text)
                if value == float("inf"):
                    return ast.BigFloatLit(tok, Decimal(text))
                return ast.FloatLit(tok, value)
            case TokenType.BIGFLOAT:
                return ast.BigFloatLit(tok, Decimal(text))
        base, node_cls = {
            TokenType.HEX: (16, ast.HexLit),
            TokenType.OCTAL: (8, ast.OctalLit),
            TokenType.BINARY: (2, ast.BinaryLit),
            TokenType.UINT: (10, ast.UIntegerLit),
        }[tok.type]
        value = int(text[2:], base)
        if value >= UINT64_LIMIT:
            return ast.BigIntegerLit(tok, value)
        return node_cls(tok, value)

    def _parse_string(self) -> ast.StringLit:
        tok = self.cur
        if not tok.segments:
            return ast.StringLit(tok, tok.literal)
        parts = []
        for kind, text, line, column in tok.segments:
            if kind == "text":
                parts.append(text)
            else:
                parts.append(self._parse_interpolation(text, line, column, tok))
        value = "".join(p for p in parts if isinstance(p, str))
        return ast.StringLit(tok, value, tuple(parts))

    def _parse_interpolation(self, text: str, line: int, column: int, tok: Token) -> ast.Expression:
        sub = Parser(Lexer(text, self.lexer.file_path, line, column))
        if sub.cur.type == TokenType.EOF and not sub.errors:
            self._fail("empty string interpolation", tok)
        try:
            expr = sub.parse_expression(Precedence.LOWEST)
            if sub.peek.type != TokenType.EOF:
                sub._fail(f"unexpected {_describe(sub.peek)} in string interpolation", sub.peek)
        except _Bail:
            pass
        if sub.errors:
            self.errors.extend(sub.errors)
            raise _Bail()
        return expr

    def _parse_regex(self) -> ast.RegexLit:
        tok = self.cur
        try:
            re.compile(tok.literal)
        except re.error as e:
            self._fail(f"invalid regex r/{tok.literal}/: {e}", tok)
        return ast.RegexLit(tok, tok.literal)

    def _parse_prefix(self) -> ast.PrefixExpr:
        tok = self.cur
        self._next()
        return ast.PrefixExpr(tok, tok.type.value, self.parse_expression(Precedence.PREFIX))

    def _parse_infix(self, left: ast.Expression) -> ast.InfixExpr:
        tok = self.cur
        precedence = PRECEDENCES[tok.type]
        self._next()
        # `**` is right-associative.
        if tok.type == TokenType.POW:
            precedence = Precedence(precedence - 1)
        return ast.InfixExpr(tok, left, tok.type.value, self.parse_expression(precedence))

    def _parse_assignment(self, left: ast.Expression) -> ast.AssignmentExpr:
        tok = self.cur
        if not isinstance(left, (ast.Identifier, ast.IndexExpr)):
            self._fail(f"cannot assign to {left.to_string()}", tok)
        self._next()
        return ast.AssignmentExpr(tok, left, tok.literal, self.parse_expression(Precedence.LOWEST))

    def _parse_grouped(self) -> ast.Expression:
        self._next()
        expr = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.RPAREN)
        return expr

    def _parse_expression_list(self, end: TokenType) -> Tuple[ast.Expression, ...]:
        items = []
        if self.peek.type == end:
            self._next()
            return ()
        while True:
            self._next()
            items.append(self.parse_expression(Precedence.LOWEST))
            if self.peek.type == TokenType.COMMA:
                self._next()
                if self.peek.type == end:
                    break
                continue
            break
        self._expect_peek(end)
        return tuple(items)

    def _parse_comprehension_tail(self, end: TokenType) -> Tuple[str, Optional[str]]:
        self._next()
        for_tok = self.cur
        self._next()
        start = self.cur.offset
        header = self.parse_expression(Precedence.LOWEST)
        if loop_targets(header) is None:
            self._fail("comprehension header must have the form 'x in xs'", for_tok)
        header_src = self._source_slice(start)
        filter_src = None
        if self.peek.type == TokenType.IF:
            self._next()
            self._next()
            start = self.cur.offset
            self.parse_expression(Precedence.LOWEST)
            filter_src = self._source_slice(start)
        self._expect_peek(end)
        return header_src, filter_src

    def _parse_list(self) -> ast.Expression:
        tok = self.cur
        if self.peek.type == TokenType.RBRACKET:
            self._next()
            return ast.ListLit(tok)
        self._next()
        start = self.cur.offset
        first = self.parse_expression(Precedence.LOWEST)
        if self.peek.type == TokenType.FOR:
            element_src = self._source_slice(start)
            header_src, filter_src = self._parse_comprehension_tail(TokenType.RBRACKET)
            return ast.ListComp(tok, element_src, header_src, filter_src)
        elements = [first]
        while self.peek.type == TokenType.COMMA:
            self._next()
            if self.peek.type == TokenType.RBRACKET:
                break
            self._next()
            elements.append(self.parse_expression(Precedence.LOWEST))
        self._expect_peek(TokenType.RBRACKET)
        return ast.ListLit(tok, tuple(elements))

    def _parse_map_or_set(self) -> ast.Expression:
        tok = self.cur
        if self.peek.type == TokenType.RBRACE:
            self._next()
            return ast.MapLit(tok)
        self._next()
        start = self.cur.offset
        first = self.parse_expression(Precedence.LOWEST)
        if self.peek.type == TokenType.FOR:
            element_src = self._source_slice(start)
            header_src, filter_src = self._parse_comprehension_tail(TokenType.RBRACE)
            return ast.SetComp(tok, element_src, header_src, filter_src)
        if self.peek.type in (TokenType.COMMA, TokenType.RBRACE):
            elements = [first]
            while self.peek.type == TokenType.COMMA:
                self._next()
                if self.peek.type == TokenType.RBRACE:
                    break
                self._next()
                elements.append(self.parse_expression(Precedence.LOWEST))
            self._expect_peek(TokenType.RBRACE)
            return ast.SetLit(tok, tuple(elements))

        key_src = self._source_slice(start)
        self._expect_peek(TokenType.COLON)
        self._next()
        start = self.cur.offset
        value = self.parse_expression(Precedence.LOWEST)
        if self.peek.type == TokenType.FOR:
            value_src = self._source_slice(start)
            header_src, filter_src = self._parse_comprehension_tail(TokenType.RBRACE)
            return ast.MapComp(tok, key_src, value_src, header_src, filter_src)
        keys, values = [first], [value]
        while self.peek.type == TokenType.COMMA:
            self._next()
            if self.peek.type == TokenType.RBRACE:
                break
            self._next()
            keys.append(self.parse_expression(Precedence.LOWEST))
            self._expect_peek(TokenType.COLON)
            self._next()
            values.append(self.parse_expression(Precedence.LOWEST))
        self._expect_peek(TokenType.RBRACE)
        return ast.MapLit(tok, tuple(keys), tuple(values))

    def _parse_struct(self) -> ast.StructLit:
        tok = self.cur
        names, values = [], []
        while self.peek.type != TokenType.RBRACE:
            self._next()
            if self.cur.type not in (TokenType.IDENT, TokenType.STRING):
                self._fail(f"expected a field name, got {_describe(self.cur)}", self.cur)
            if self.cur.literal in names:
                self._fail(f"duplicate struct field '{self.cur.literal}'", self.cur)
            names.append(self.cur.literal)
            self._expect_peek(TokenType.COLON)
            self._next()
            values.append(self.parse_expression(Precedence.LOWEST))
            if self.peek.type != TokenType.COMMA:
                break
            self._next()
        self._expect_peek(TokenType.RBRACE)
        return ast.StructLit(tok, tuple(names), tuple(values))

    def _parse_function_literal(self) -> ast.FunctionLit:
        tok = self.cur
        self._expect_peek(TokenType.LPAREN)
        params, defaults = self._parse_params(TokenType.RPAREN)
        self._expect_peek(TokenType.LBRACE)
        return ast.FunctionLit(tok, params, defaults, self._parse_block())

    def _parse_lambda(self) -> ast.FunctionLit:
        tok = self.cur
        params, defaults = (), ()
        if tok.type == TokenType.PIPE:
            params, defaults = self._parse_params(TokenType.PIPE, Precedence.BIT_OR)
        self._expect_peek(TokenType.RARROW)
        self._expect_peek(TokenType.LBRACE)
        return ast.FunctionLit(tok, params, defaults, self._parse_block())

    def _parse_if(self) -> ast.IfExpr:
        tok = self.cur
        self._next()
        condition = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.LBRACE)
        consequence = self._parse_block()
        alternative = None
        if self.peek.type == TokenType.ELSE:
            self._next()
            if self.peek.type == TokenType.IF:
                self._next()
                nested = self._parse_if()
                alternative = ast.BlockStmt(nested.token, (ast.ExpressionStmt(nested.token, nested),))
            else:
                self._expect_peek(TokenType.LBRACE)
                alternative = self._parse_block()
        return ast.IfExpr(tok, condition, consequence, alternative)

    def _parse_match(self) -> ast.MatchExpr:
        tok = self.cur
        subject = None
        if self.peek.type != TokenType.LBRACE:
            self._next()
            subject = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.LBRACE)
        self._next()
        conditions, consequences = [], []
        while self.cur.type != TokenType.RBRACE:
            if self.cur.type == TokenType.EOF:
                self._fail("expected '}' to close match, got EOF", self.cur)
            conditions.append(self.parse_expression(Precedence.LOWEST))
            self._expect_peek(TokenType.RARROW)
            if self.peek.type == TokenType.LBRACE:
                self._next()
                consequences.append(self._parse_block())
            else:
                self._next()
                arm_tok = self.cur
                expr = self.parse_expression(Precedence.LOWEST)
                consequences.append(ast.BlockStmt(arm_tok, (ast.ExpressionStmt(arm_tok, expr),)))
            if self.peek.type == TokenType.COMMA:
                self._next()
            self._next()
        return ast.MatchExpr(tok, subject, tuple(conditions), tuple(consequences))

    def _parse_for(self) -> ast.ForExpr:
        tok = self.cur
        c_style = self.peek.type == TokenType.VAR or (
            self.peek.type == TokenType.LPAREN and self._peek_ahead(1).type == TokenType.VAR)
        if c_style:
            parenthesized = self.peek.type == TokenType.LPAREN
            if parenthesized:
                self._next()
            self._next()
            init = self._parse_var()
            self._expect_peek(TokenType.SEMICOLON)
            self._next()
            condition = self.parse_expression(Precedence.LOWEST)
            self._expect_peek(TokenType.SEMICOLON)
            self._next()
            post = self.parse_expression(Precedence.LOWEST)
            if parenthesized:
                self._expect_peek(TokenType.RPAREN)
            self._expect_peek(TokenType.LBRACE)
            return ast.ForExpr(tok, condition, self._parse_block(), init=init, post=post)

        self._next()
        condition = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.LBRACE)
        body = self._parse_block()
        targets = loop_targets(condition)
        if targets is not None:
            names, destructure, iterable = targets
            return ast.ForExpr(tok, None, body, targets=names, iterable=iterable, destructure=destructure)
        return ast.ForExpr(tok, condition, body)

    def _parse_eval(self) -> ast.EvalExpr:
        tok = self.cur
        self._expect_peek(TokenType.LPAREN)
        self._next()
        argument = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.RPAREN)
        return ast.EvalExpr(tok, argument)

    def _parse_spawn(self) -> ast.SpawnExpr:
        tok = self.cur
        self._expect_peek(TokenType.LPAREN)
        arguments = self._parse_expression_list(TokenType.RPAREN)
        if not arguments:
            self._fail("spawn requires a function", tok)
        return ast.SpawnExpr(tok, arguments)

    def _parse_self(self) -> ast.SelfExpr:
        tok = self.cur
        self._expect_peek(TokenType.LPAREN)
        self._expect_peek(TokenType.RPAREN)
        return ast.SelfExpr(tok)

    def _parse_call(self, function: ast.Expression) -> ast.CallExpr:
        tok = self.cur
        arguments, named = [], []
        if self.peek.type == TokenType.RPAREN:
            self._next()
            return ast.CallExpr(tok, function)
        while True:
            self._next()
            if self.cur.type == TokenType.IDENT and self.peek.type == TokenType.ASSIGN:
                name = self.cur.literal
                if any(n == name for n, _ in named):
                    self._fail(f"duplicate named argument '{name}'", self.cur)
                self._next()
                self._next()
                named.append((name, self.parse_expression(Precedence.LOWEST)))
            else:
                if named:
                    self._fail("positional argument follows named argument", self.cur)
                arguments.append(self.parse_expression(Precedence.LOWEST))
            if self.peek.type == TokenType.COMMA:
                self._next()
                if self.peek.type == TokenType.RPAREN:
                    break
                continue
            break
        self._expect_peek(TokenType.RPAREN)
        return ast.CallExpr(tok, function, tuple(arguments), tuple(named))

    def _parse_index(self, left: ast.Expression) -> ast.IndexExpr:
        tok = self.cur
        self._next()
        index = self.parse_expression(Precedence.LOWEST)
        self._expect_peek(TokenType.RBRACKET)
        return ast.IndexExpr(tok, left, index)

    def _parse_member(self, left: ast.Expression) -> ast.IndexExpr:
        tok = self.cur
        if self.peek.type == TokenType.IDENT or self.peek.literal in KEYWORDS:
            self._next()
            return ast.IndexExpr(tok, left, ast.StringLit(self.cur, self.cur.literal), member=True)
        if self.peek.type == TokenType.INT:
            self._next()
            return ast.IndexExpr(tok, left, ast.IntegerLit(self.cur, int(self.cur.literal.replace("_", ""))),
                                 member=True)
        self._fail(f"expected a member name after '.', got {_describe(self.peek)}", self.peek)


def parse(source: str, file_path: str = "<stdin>") -> ast.Program:
    parser = Parser(Lexer(source, file_path))
    program = parser.parse_program()
    if parser.errors:
        raise ParseErrors(parser.errors)
    return program


@lru_cache(maxsize=512)
def parse_fragment(source: str, file_path: str = "<stdin>") -> ast.Expression:
    """Parses a single expression, such as a deferred comprehension slice."""
    parser = Parser(Lexer(source, file_path))
    try:
        expr = parser.parse_expression(Precedence.LOWEST)
        if parser.peek.type != TokenType.EOF:
            parser._fail(f"unexpected {_describe(parser.peek)}", parser.peek)
    except _Bail:
        pass
    if parser.errors:
        raise ParseErrors(parser.errors)
    return expr
