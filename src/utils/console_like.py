from __future__ import annotations

from typing import Protocol

from loguru import logger
from rich.console import ConsoleRenderable


class ConsoleLike(Protocol):
    def print(self, msg: ConsoleRenderable | str | None = None) -> None: ...

    def info(self, msg: str) -> None: ...

    def warn(self, msg: str) -> None: ...

    def error(self, msg: str) -> None: ...

    def ok(self, msg: str) -> None: ...


class LoggingConsole:
    """Console fallback that reports through loguru.

    Used when the pipeline runs outside the CLI (tests, scripts), so
    progress ends up in the configured log sinks instead of stdout.
    """

    def print(self, msg: ConsoleRenderable | str | None = None) -> None:
        if msg is not None:
            logger.info(str(msg))

    def info(self, msg: str) -> None:
        logger.info(msg)

    def warn(self, msg: str) -> None:
        logger.warning(msg)

    def error(self, msg: str) -> None:
        logger.error(msg)

    def ok(self, msg: str) -> None:
        logger.success(msg)


def coalesce_console(console: ConsoleLike | None) -> ConsoleLike:
    return console if console is not None else LoggingConsole()
