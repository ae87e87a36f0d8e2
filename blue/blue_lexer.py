"""
The Blue lexer: turns UTF-8 source text into tokens on demand.
"""
from typing import Iterator, List, Optional

from blue.blue_token import OPERATORS, Segment, Token, TokenType, lookup_ident


class LexError(Exception):
    """Raised for malformed input; the lexer only returns EOF afterwards."""

    def __init__(self, message: str, line: int, column: int, file_path: str = "<stdin>"):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column
        self.file_path = file_path


_HEX_DIGITS = "0123456789abcdefABCDEF"
_PREFIXED_NUMBERS = {
    "x": (TokenType.HEX, _HEX_DIGITS),
    "o": (TokenType.OCTAL, "01234567"),
    "b": (TokenType.BINARY, "01"),
    "u": (TokenType.UINT, "0123456789"),
}
_SIMPLE_ESCAPES = {
    "n": "\n",
    "r": "\r",
    "t": "\t",
    '"': '"',
    "'": "'",
    "\\": "\\",
    "#": "#",
}


def is_ident_start(ch: str) -> bool:
    return ch != "" and (ch.isalpha() or ch in "_?")


def is_ident_char(ch: str) -> bool:
    return ch != "" and (ch.isalnum() or ch in "_?")


class Lexer:
    def __init__(self, source: str, file_path: str = "<stdin>", line: int = 1, column: int = 1):
        self.source = source
        self.file_path = file_path
        self.pos = 0
        self.line = line
        self.column = column
        self._failed = False
        self._import_mode = False

    def __iter__(self) -> Iterator[Token]:
        while True:
            tok = self.next_token()
            yield tok
            if tok.type == TokenType.EOF:
                return

    def next_token(self) -> Token:
        if self._failed:
            return self._eof(False)
        try:
            return self._scan()
        except LexError:
            self._failed = True
            raise

    # -- character helpers -------------------------------------------------

    def _peek(self, ahead: int = 0) -> str:
        idx = self.pos + ahead
        return self.source[idx] if idx < len(self.source) else ""

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _error(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        raise LexError(message, line or self.line, column or self.column, self.file_path)

    def _eof(self, newline: bool) -> Token:
        return Token(TokenType.EOF, "", self.file_path, self.line, self.column,
                     self.pos, self.pos, newline)

    # -- scanning ----------------------------------------------------------

    def _skip_trivia(self) -> bool:
        """Skips whitespace and comments; reports whether a newline was crossed."""
        newline = self.pos == 0
        while True:
            ch = self._peek()
            if ch == "":
                return newline
            if ch == "\n":
                newline = True
                self._advance()
            elif ch.isspace():
                self._advance()
            elif ch == "#":
                if self.source.startswith("###", self.pos):
                    line, col = self.line, self.column
                    for _ in range(3):
                        self._advance()
                    close = self.source.find("###", self.pos)
                    if close < 0:
                        self._error("unterminated block comment", line, col)
                    while self.pos < close + 3:
                        if self._advance() == "\n":
                            newline = True
                else:
                    while self._peek() not in ("", "\n"):
                        self._advance()
            else:
                return newline

    def _scan(self) -> Token:
        newline = self._skip_trivia()
        start, line, col = self.pos, self.line, self.column
        ch = self._peek()
        if ch == "":
            return self._eof(newline)

        def make(tok_type: TokenType, literal: str, segments=None) -> Token:
            return Token(tok_type, literal, self.file_path, line, col, start, self.pos,
                         newline, segments)

        if self._import_mode:
            self._import_mode = False
            while is_ident_char(self._peek()) or self._peek() == ".":
                self._advance()
            if self.pos == start:
                self._error("expected an import path", line, col)
            return make(TokenType.IMPORT_PATH, self.source[start:self.pos])

        if ch == "r" and self._peek(1) == "/":
            return make(TokenType.REGEX, self._read_regex())

        if is_ident_start(ch):
            while is_ident_char(self._peek()):
                self._advance()
            ident = self.source[start:self.pos]
            tok_type = lookup_ident(ident)
            if tok_type == TokenType.IMPORT:
                self._import_mode = True
            return make(tok_type, ident)

        if ch.isdigit():
            tok_type, literal = self._read_number()
            return make(tok_type, literal)

        if self.source.startswith('"""', self.pos):
            return make(TokenType.RAW_STRING, self._read_raw_string())

        if ch in ('"', "'"):
            literal, segments = self._read_string(ch)
            return make(TokenType.STRING, literal, segments)

        if ch == "`":
            return make(TokenType.EXEC_STRING, self._read_exec_string())

        for width in (3, 2, 1):
            lexeme = self.source[self.pos:self.pos + width]
            tok_type = OPERATORS[width].get(lexeme)
            if tok_type is not None:
                for _ in range(width):
                    self._advance()
                return make(tok_type, lexeme)

        self._error(f"illegal character {ch!r}", line, col)

    def _read_number(self):
        if self._peek() == "0" and self._peek(1).lower() in _PREFIXED_NUMBERS:
            tok_type, digits = _PREFIXED_NUMBERS[self._peek(1).lower()]
            line, col = self.line, self.column
            start = self.pos
            self._advance()
            self._advance()
            body = self.pos
            while self._peek() != "" and (self._peek() in digits or self._peek() == "_"):
                self._advance()
            if self.source[body:self.pos].replace("_", "") == "":
                self._error("malformed number literal", line, col)
            return tok_type, self.source[start:self.pos]

        start = self.pos
        while self._peek().isdigit() or self._peek() == "_":
            self._advance()
        tok_type = TokenType.INT
        # `1..5` is a range: a dot is only a decimal point when a digit follows.
        if self._peek() == "." and self._peek(1).isdigit():
            tok_type = TokenType.FLOAT
            self._advance()
            while self._peek().isdigit() or self._peek() == "_":
                self._advance()
        literal = self.source[start:self.pos]
        if self._peek() == "n" and not is_ident_char(self._peek(1)):
            self._advance()
            tok_type = TokenType.BIGFLOAT if tok_type == TokenType.FLOAT else TokenType.BIGINT
        return tok_type, literal

    def _read_string(self, quote: str):
        """Reads a quoted string, collecting `#{...}` interpolation segments."""
        line, col = self.line, self.column
        self._advance()
        body_start = self.pos
        buf: List[str] = []
        pending = bytearray()
        segments: List[Segment] = []
        text_line, text_col = self.line, self.column
        has_expr = False

        def flush_bytes():
            if pending:
                buf.append(pending.decode("utf-8", errors="replace"))
                pending.clear()

        while True:
            ch = self._peek()
            if ch == "":
                self._error("unterminated string", line, col)
            if ch == quote:
                flush_bytes()
                raw = self.source[body_start:self.pos]
                self._advance()
                break
            if ch == "\\":
                esc_line, esc_col = self.line, self.column
                self._advance()
                esc = self._peek()
                if esc == "":
                    self._error("unterminated string", line, col)
                self._advance()
                if esc == "x":
                    hex_digits = self._peek() + self._peek(1)
                    if len(hex_digits) != 2 or any(d not in _HEX_DIGITS for d in hex_digits):
                        self._error("invalid \\x escape", esc_line, esc_col)
                    self._advance()
                    self._advance()
                    pending.append(int(hex_digits, 16))
                    continue
                flush_bytes()
                buf.append(_SIMPLE_ESCAPES.get(esc, "\\" + esc))
                continue
            flush_bytes()
            if ch == "#" and self._peek(1) == "{":
                has_expr = True
                segments.append(("text", "".join(buf), text_line, text_col))
                buf.clear()
                self._advance()
                self._advance()
                expr_line, expr_col = self.line, self.column
                segments.append(("expr", self._read_interpolation(line, col), expr_line, expr_col))
                text_line, text_col = self.line, self.column
                continue
            buf.append(self._advance())

        if not has_expr:
            return "".join(buf), None
        segments.append(("text", "".join(buf), text_line, text_col))
        return raw, tuple(s for s in segments if s[0] == "expr" or s[1])

    def _read_interpolation(self, line: int, col: int) -> str:
        start = self.pos
        depth = 0
        quote = None
        while True:
            ch = self._peek()
            if ch == "":
                self._error("unterminated string interpolation", line, col)
            if quote is not None:
                if ch == "\\":
                    self._advance()
                elif ch == quote:
                    quote = None
            elif ch in ('"', "'"):
                quote = ch
            elif ch == "{":
                depth += 1
            elif ch == "}":
                if depth == 0:
                    text = self.source[start:self.pos]
                    self._advance()
                    return text
                depth -= 1
            self._advance()

    def _read_raw_string(self) -> str:
        line, col = self.line, self.column
        for _ in range(3):
            self._advance()
        close = self.source.find('"""', self.pos)
        if close < 0:
            self._error("unterminated string", line, col)
        text = self.source[self.pos:close]
        while self.pos < close + 3:
            self._advance()
        return text

    def _read_exec_string(self) -> str:
        line, col = self.line, self.column
        self._advance()
        start = self.pos
        while self._peek() != "`":
            if self._peek() == "":
                self._error("unterminated exec string", line, col)
            self._advance()
        text = self.source[start:self.pos]
        self._advance()
        return text

    def _read_regex(self) -> str:
        line, col = self.line, self.column
        self._advance()
        self._advance()
        buf: List[str] = []
        while True:
            ch = self._peek()
            if ch in ("", "\n"):
                self._error("unterminated regex literal", line, col)
            self._advance()
            if ch == "/":
                return "".join(buf)
            if ch == "\\" and self._peek() == "/":
                buf.append(self._advance())
                continue
            buf.append(ch)
            if ch == "\\" and self._peek() not in ("", "\n"):
                buf.append(self._advance())


def tokenize(source: str, file_path: str = "<stdin>") -> List[Token]:
    return list(Lexer(source, file_path))
