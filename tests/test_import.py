import pytest

from blue import ScriptRunner
from blue.blue_datatypes import Integer, String
from blue.blue_host import DictSourceLoader, FileSourceLoader, LoaderError

MODULES = {
    "lib.math": "fun square(x) { x * x }\nval _secret = 1\nval pi = 3\n",
    "lib.noisy": 'println("loaded")\nval ready = true\n',
    "cycle.a": "import cycle.b\n",
    "cycle.b": "import cycle.a\n",
    "broken": "val = 1\n",
}


async def run_blue(src: str, loader=None):
    runner = ScriptRunner(loader=loader or DictSourceLoader(MODULES))
    try:
        return await runner.handle_script(src)
    finally:
        runner.close()


def assert_ok(res, expected=None):
    assert res.status == 'success', res.error_message
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains: str | None = None):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    if contains is not None:
        assert contains in (res.error_message or ""), f"error did not contain {contains!r}: {res.error_message!r}"


@pytest.mark.asyncio
async def test_import_binds_last_path_segment():
    assert_ok(await run_blue("import lib.math\nmath.square(4) + math.pi"), Integer(19))


@pytest.mark.asyncio
async def test_private_names_are_hidden():
    assert_error(await run_blue("import lib.math\nmath._secret"), "'_secret' is private to module 'lib.math'")


@pytest.mark.asyncio
async def test_unknown_member():
    assert_error(await run_blue("import lib.math\nmath.cube"), "'cube' not found in module 'lib.math'")


@pytest.mark.asyncio
async def test_modules_are_evaluated_once():
    res = await run_blue("import lib.noisy\nimport lib.noisy\nnoisy.ready")
    assert res.status == 'success', res.error_message
    stdout = [e["message"] for e in res.side_effects if e["topics"] == ["stdout"]]
    assert stdout == ["loaded\n"]


@pytest.mark.asyncio
async def test_missing_module():
    res = await run_blue("import nope")
    assert_error(res, "ImportError: module 'nope' not found")


@pytest.mark.asyncio
async def test_cyclic_import_is_reported():
    assert_error(await run_blue("import cycle.a"), "cyclic import of module 'cycle.a'")


@pytest.mark.asyncio
async def test_module_with_syntax_error():
    assert_error(await run_blue("import broken"), "module 'broken' failed to parse")


@pytest.mark.asyncio
async def test_help_lists_public_module_names():
    res = await run_blue("import lib.math\nhelp(math)")
    assert_ok(res, String("Module 'lib.math'\n    Names: pi, square\n"))


@pytest.mark.asyncio
async def test_file_loader_maps_dots_to_directories(tmp_path):
    (tmp_path / "util").mkdir()
    (tmp_path / "util" / "strings.b").write_text('fun shout(s) { upper(s) + "!" }\n', encoding="utf-8")
    res = await run_blue('import util.strings\nstrings.shout("hi")', loader=FileSourceLoader(str(tmp_path)))
    assert_ok(res, String("HI!"))


def test_file_loader_errors(tmp_path):
    loader = FileSourceLoader(str(tmp_path))
    assert loader.resolve("a.b") == tmp_path / "a" / "b.b"
    with pytest.raises(LoaderError):
        loader.load("missing")
    with pytest.raises(LoaderError):
        loader.resolve("..")


def test_file_loader_defaults_to_install_path(monkeypatch, tmp_path):
    monkeypatch.setenv("BLUE_INSTALL_PATH", str(tmp_path))
    assert FileSourceLoader().root == tmp_path
