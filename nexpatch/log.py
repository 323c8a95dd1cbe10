"""
Per-invocation structured log.

Every message is recorded as a LogRecord, forwarded to the stdlib logger and
pushed to an optional sink so an embedding UI can show progress live.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

DEBUG = "debug"
INFO  = "info"
ERROR = "error"

_STDLIB_LEVELS = {DEBUG: logging.DEBUG, INFO: logging.INFO, ERROR: logging.ERROR}


@dataclass(frozen=True)
class LogRecord:
    level: str
    message: str


Sink = Callable[[LogRecord], None]


class PatchLogger:
    def __init__(self, verbose: bool = False, sink: Optional[Sink] = None,
                 name: str = "nexpatch"):
        self.verbose = verbose
        self.sink = sink
        self.records: List[LogRecord] = []
        self._log = logging.getLogger(name)

    def _emit(self, level: str, msg: str) -> None:
        record = LogRecord(level, msg)
        self.records.append(record)
        self._log.log(_STDLIB_LEVELS[level], msg)
        if self.sink is not None:
            self.sink(record)

    def d(self, msg: str) -> None:
        if self.verbose:
            self._emit(DEBUG, msg)

    def i(self, msg: str) -> None:
        self._emit(INFO, msg)

    def e(self, msg: str) -> None:
        self._emit(ERROR, msg)


def configure_console(verbose: bool = False) -> None:
    """Console format used by the CLI: `[INFO] message`."""
    logging.basicConfig(
        format="[%(levelname)s] %(message)s",
        level=logging.DEBUG if verbose else logging.INFO,
    )
