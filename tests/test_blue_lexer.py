import pytest

from blue.blue_lexer import LexError, Lexer, tokenize
from blue.blue_token import TokenType


def types(source):
    return [t.type for t in tokenize(source)]


def test_positions_are_one_indexed():
    toks = tokenize("var x = 1\n  x")
    assert (toks[0].line, toks[0].column) == (1, 1)
    last = toks[-2]
    assert last.literal == "x"
    assert (last.line, last.column) == (2, 3)
    assert last.newline_before


def test_numeric_literal_variants():
    toks = tokenize("1_000 1.5 0xFF 0o77 0b1010 0u7 123n 1.5n")
    got = [(t.type, t.literal) for t in toks[:-1]]
    assert got == [
        (TokenType.INT, "1_000"),
        (TokenType.FLOAT, "1.5"),
        (TokenType.HEX, "0xFF"),
        (TokenType.OCTAL, "0o77"),
        (TokenType.BINARY, "0b1010"),
        (TokenType.UINT, "0u7"),
        (TokenType.BIGINT, "123"),
        (TokenType.BIGFLOAT, "1.5"),
    ]


def test_range_is_not_a_float():
    assert types("1..5") == [TokenType.INT, TokenType.RANGE, TokenType.INT, TokenType.EOF]
    assert types("1..<5")[1] == TokenType.NONINCLUSIVE_RANGE


def test_longest_operator_match():
    assert types("**= //= ... => @{ && ||")[:-1] == [
        TokenType.POW_ASSIGN, TokenType.FDIV_ASSIGN, TokenType.ELLIPSIS, TokenType.RARROW,
        TokenType.STRUCT_LBRACE, TokenType.AND, TokenType.OR,
    ]


def test_string_escapes_and_hex_bytes():
    tok = tokenize(r'"a\tb\n\xC3\xA9"')[0]
    assert tok.type == TokenType.STRING
    assert tok.literal == "a\tb\né"


def test_interpolation_segments():
    tok = tokenize('"sum: #{1 + 2}!"')[0]
    assert tok.segments == (
        ("text", "sum: ", 1, 2),
        ("expr", "1 + 2", 1, 9),
        ("text", "!", 1, 15),
    )


def test_raw_string_keeps_escapes_and_hashes():
    tok = tokenize('"""a\\n#{b}"""')[0]
    assert tok.type == TokenType.RAW_STRING
    assert tok.literal == "a\\n#{b}"


def test_regex_and_exec_strings():
    toks = tokenize(r"r/a\/b+/ `ls -l`")
    assert (toks[0].type, toks[0].literal) == (TokenType.REGEX, "a/b+")
    assert (toks[1].type, toks[1].literal) == (TokenType.EXEC_STRING, "ls -l")


def test_comments_are_skipped():
    source = "1 # trailing\n### block\ncomment ###\n2"
    assert [t.literal for t in tokenize(source)[:-1]] == ["1", "2"]


def test_import_path_mode_is_consumed_once():
    toks = tokenize("import a.b.c\nx.y")
    assert toks[1].type == TokenType.IMPORT_PATH
    assert toks[1].literal == "a.b.c"
    assert [t.type for t in toks[2:5]] == [TokenType.IDENT, TokenType.DOT, TokenType.IDENT]


def test_identifiers_allow_question_mark_and_unicode():
    toks = tokenize("empty? café _x")
    assert [t.literal for t in toks[:-1]] == ["empty?", "café", "_x"]
    assert all(t.type == TokenType.IDENT for t in toks[:-1])


@pytest.mark.parametrize("source, message", [
    ('"abc', "unterminated string"),
    (r'"\xZZ"', "invalid \\x escape"),
    ("1 $ 2", "illegal character"),
])
def test_lex_errors(source, message):
    with pytest.raises(LexError) as exc:
        tokenize(source)
    assert message in exc.value.message


def test_lexer_returns_eof_after_error():
    lexer = Lexer("$ x")
    with pytest.raises(LexError):
        lexer.next_token()
    assert lexer.next_token().type == TokenType.EOF
