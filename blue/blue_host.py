"""
Host capabilities consumed by the evaluator: module source loading, task
scheduling and time.
"""
import asyncio
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Coroutine, Dict, Optional

SOURCE_SUFFIX = ".b"


class LoaderError(Exception):
    """Raised when a module's source cannot be produced."""


class SourceLoader(ABC):
    @abstractmethod
    def load(self, path: str) -> str:
        """Returns the source text of the dotted module `path`."""
        raise NotImplementedError


class FileSourceLoader(SourceLoader):
    """Maps `a.b.c` to `<root>/a/b/c.b`."""

    def __init__(self, root: Optional[str] = None):
        if root is None:
            root = os.environ.get("BLUE_INSTALL_PATH") or os.getcwd()
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        parts = [p for p in path.split(".") if p]
        if not parts:
            raise LoaderError(f"invalid module path '{path}'")
        return self.root.joinpath(*parts).with_suffix(SOURCE_SUFFIX)

    def load(self, path: str) -> str:
        file_path = self.resolve(path)
        try:
            return file_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise LoaderError(f"module '{path}' not found (looked in {file_path})") from None
        except (OSError, UnicodeDecodeError) as e:
            raise LoaderError(f"module '{path}' could not be read: {e}") from e


class DictSourceLoader(SourceLoader):
    """Serves module sources from memory."""

    def __init__(self, modules: Optional[Dict[str, str]] = None):
        self.modules: Dict[str, str] = dict(modules or {})

    def load(self, path: str) -> str:
        try:
            return self.modules[path]
        except KeyError:
            raise LoaderError(f"module '{path}' not found") from None


class Scheduler(ABC):
    @abstractmethod
    def spawn(self, coro: Coroutine) -> asyncio.Task:
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    """Runs process bodies as tasks on the running event loop."""

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro)


class Clock(ABC):
    @abstractmethod
    def now_ms(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def sleep(self, ms: float):
        raise NotImplementedError


class SystemClock(Clock):
    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    async def sleep(self, ms: float):
        await asyncio.sleep(max(ms, 0) / 1000.0)
