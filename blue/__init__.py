from blue.blue_datatypes import BlueError, Env
from blue.blue_host import DictSourceLoader, FileSourceLoader, LoaderError
from blue.blue_parser import ParseErrors, parse
from blue.blue_process import clear_global_state
from blue.blue_runtime import BuiltinRegistry, ExecutionResult, ScriptRunner

__all__ = [
    "BlueError",
    "BuiltinRegistry",
    "DictSourceLoader",
    "Env",
    "ExecutionResult",
    "FileSourceLoader",
    "LoaderError",
    "ParseErrors",
    "ScriptRunner",
    "clear_global_state",
    "parse",
]
