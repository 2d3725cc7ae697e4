"""
The output sink for user-facing status lines.

Status lines are written and flushed one at a time so an operator watching
a slow renewal sees progress as it happens.  ``IndentedOutput`` wraps a sink
so everything written by a nested step (the staging dry-run, the production
request) is shown one tab deeper.
"""
from __future__ import annotations

from typing import IO


def line(out: IO[str], text: str) -> None:
    out.write(text + "\n")
    out.flush()


class IndentedOutput:
    """File-like wrapper prefixing every line with a tab."""

    def __init__(self, out: IO[str]) -> None:
        self.out = out
        self._need_leading_tab = True

    def write(self, text: str) -> int:
        if not text:
            return 0
        if self._need_leading_tab:
            self.out.write("\t")

        # a trailing newline is left alone, the next write may not be indented
        if text.endswith("\n"):
            indented = text[:-1].replace("\n", "\n\t") + "\n"
            self._need_leading_tab = True
        else:
            indented = text.replace("\n", "\n\t")
            self._need_leading_tab = False
        self.out.write(indented)
        return len(text)

    def flush(self) -> None:
        self.out.flush()
