"""Incremental extraction of the first complete JSON object from a stream."""

from __future__ import annotations


class IncrementalJSON:
    """Scans fed text for the first balanced ``{...}`` object.

    Text before the first ``{`` is skipped; braces inside strings are ignored.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._started = False
        self._completed = False
        self._partial: list[str] = []

    def feed(self, s: str) -> str | None:
        """Consume more text; return the object text once complete, else None."""
        if self._completed:
            return "".join(self._partial)

        for c in s:
            if not self._started:
                if c != "{":
                    continue
                self._started = True

            self._partial.append(c)

            if self._escaped:
                self._escaped = False
            elif c == "\\" and self._in_string:
                self._escaped = True
            elif c == '"':
                self._in_string = not self._in_string
            elif not self._in_string and c == "{":
                self._depth += 1
            elif not self._in_string and c == "}":
                self._depth -= 1
                if self._depth == 0:
                    self._completed = True
                    return "".join(self._partial)

        return None