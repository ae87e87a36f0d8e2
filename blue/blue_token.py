"""
Token types and the token value produced by the lexer.
"""
from enum import Enum
from typing import NamedTuple, Optional, Tuple


class TokenType(str, Enum):
    ILLEGAL = "ILLEGAL"
    EOF = "EOF"

    # Identifiers and literals
    IDENT = "IDENT"
    IMPORT_PATH = "IMPORT_PATH"
    INT = "INT"
    FLOAT = "FLOAT"
    BIGINT = "BIGINT"
    BIGFLOAT = "BIGFLOAT"
    HEX = "HEX"
    OCTAL = "OCTAL"
    BINARY = "BINARY"
    UINT = "UINT"
    STRING = "STRING"
    RAW_STRING = "RAW_STRING"
    EXEC_STRING = "EXEC_STRING"
    REGEX = "REGEX"

    # Assignment operators
    ASSIGN = "="
    PLUS_ASSIGN = "+="
    MINUS_ASSIGN = "-="
    STAR_ASSIGN = "*="
    SLASH_ASSIGN = "/="
    FDIV_ASSIGN = "//="
    PERCENT_ASSIGN = "%="
    POW_ASSIGN = "**="
    AMP_ASSIGN = "&="
    PIPE_ASSIGN = "|="
    CARET_ASSIGN = "^="
    RSHIFT_ASSIGN = ">>="
    LSHIFT_ASSIGN = "<<="

    # Operators
    PLUS = "+"
    MINUS = "-"
    STAR = "*"
    SLASH = "/"
    FDIV = "//"
    PERCENT = "%"
    POW = "**"
    BANG = "!"
    TILDE = "~"
    AMP = "&"
    PIPE = "|"
    CARET = "^"
    LSHIFT = "<<"
    RSHIFT = ">>"
    LT = "<"
    GT = ">"
    LTEQ = "<="
    GTEQ = ">="
    EQ = "=="
    NOT_EQ = "!="
    RANGE = ".."
    NONINCLUSIVE_RANGE = "..<"
    ELLIPSIS = "..."
    RARROW = "=>"

    # Delimiters
    COMMA = ","
    SEMICOLON = ";"
    COLON = ":"
    DOT = "."
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    STRUCT_LBRACE = "@{"

    # Keywords
    VAR = "var"
    VAL = "val"
    FUN = "fun"
    RETURN = "return"
    IF = "if"
    ELSE = "else"
    MATCH = "match"
    FOR = "for"
    IN = "in"
    NOTIN = "notin"
    AND = "and"
    OR = "or"
    NOT = "not"
    CONST = "const"
    TRUE = "true"
    FALSE = "false"
    NULL = "null"
    IMPORT = "import"
    TRY = "try"
    CATCH = "catch"
    FINALLY = "finally"
    EVAL = "eval"
    BREAK = "break"
    CONTINUE = "continue"
    SPAWN = "spawn"
    SELF = "self"


KEYWORDS = {
    "var": TokenType.VAR,
    "val": TokenType.VAL,
    "fun": TokenType.FUN,
    "return": TokenType.RETURN,
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "match": TokenType.MATCH,
    "for": TokenType.FOR,
    "in": TokenType.IN,
    "notin": TokenType.NOTIN,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
    "const": TokenType.CONST,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "null": TokenType.NULL,
    "import": TokenType.IMPORT,
    "try": TokenType.TRY,
    "catch": TokenType.CATCH,
    "finally": TokenType.FINALLY,
    "eval": TokenType.EVAL,
    "break": TokenType.BREAK,
    "continue": TokenType.CONTINUE,
    "spawn": TokenType.SPAWN,
    "self": TokenType.SELF,
}

# Operator lexemes grouped by length; the lexer tries longer ones first.
OPERATORS = {
    3: {
        "..<": TokenType.NONINCLUSIVE_RANGE,
        "...": TokenType.ELLIPSIS,
        "//=": TokenType.FDIV_ASSIGN,
        "**=": TokenType.POW_ASSIGN,
        ">>=": TokenType.RSHIFT_ASSIGN,
        "<<=": TokenType.LSHIFT_ASSIGN,
    },
    2: {
        "..": TokenType.RANGE,
        "//": TokenType.FDIV,
        "**": TokenType.POW,
        "==": TokenType.EQ,
        "!=": TokenType.NOT_EQ,
        "<=": TokenType.LTEQ,
        ">=": TokenType.GTEQ,
        "<<": TokenType.LSHIFT,
        ">>": TokenType.RSHIFT,
        "=>": TokenType.RARROW,
        "+=": TokenType.PLUS_ASSIGN,
        "-=": TokenType.MINUS_ASSIGN,
        "*=": TokenType.STAR_ASSIGN,
        "/=": TokenType.SLASH_ASSIGN,
        "%=": TokenType.PERCENT_ASSIGN,
        "&=": TokenType.AMP_ASSIGN,
        "|=": TokenType.PIPE_ASSIGN,
        "^=": TokenType.CARET_ASSIGN,
        "&&": TokenType.AND,
        "||": TokenType.OR,
        "@{": TokenType.STRUCT_LBRACE,
    },
    1: {
        "=": TokenType.ASSIGN,
        "+": TokenType.PLUS,
        "-": TokenType.MINUS,
        "*": TokenType.STAR,
        "/": TokenType.SLASH,
        "%": TokenType.PERCENT,
        "!": TokenType.BANG,
        "~": TokenType.TILDE,
        "&": TokenType.AMP,
        "|": TokenType.PIPE,
        "^": TokenType.CARET,
        "<": TokenType.LT,
        ">": TokenType.GT,
        ",": TokenType.COMMA,
        ";": TokenType.SEMICOLON,
        ":": TokenType.COLON,
        ".": TokenType.DOT,
        "(": TokenType.LPAREN,
        ")": TokenType.RPAREN,
        "{": TokenType.LBRACE,
        "}": TokenType.RBRACE,
        "[": TokenType.LBRACKET,
        "]": TokenType.RBRACKET,
    },
}

ASSIGN_OPERATORS = frozenset({
    TokenType.ASSIGN, TokenType.PLUS_ASSIGN, TokenType.MINUS_ASSIGN,
    TokenType.STAR_ASSIGN, TokenType.SLASH_ASSIGN, TokenType.FDIV_ASSIGN,
    TokenType.PERCENT_ASSIGN, TokenType.POW_ASSIGN, TokenType.AMP_ASSIGN,
    TokenType.PIPE_ASSIGN, TokenType.CARET_ASSIGN, TokenType.RSHIFT_ASSIGN,
    TokenType.LSHIFT_ASSIGN,
})

# (kind, text, line, column); kind is "text" or "expr"
Segment = Tuple[str, str, int, int]


class Token(NamedTuple):
    type: TokenType
    literal: str
    file_path: str = "<stdin>"
    line: int = 1
    column: int = 1
    offset: int = 0
    end: int = 0
    newline_before: bool = False
    segments: Optional[Tuple[Segment, ...]] = None

    def location(self) -> str:
        return f"{self.file_path}:{self.line}:{self.column}"


def lookup_ident(ident: str) -> TokenType:
    return KEYWORDS.get(ident, TokenType.IDENT)
