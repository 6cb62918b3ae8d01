"""
Incremental JSON frame extraction.

Some upstreams stream a single JSON array of objects (``[{...},\\r\\n{...}]``)
with no line framing, and chunk boundaries fall anywhere: inside a string,
inside an escape sequence, between objects. ``JsonFrameParser`` accepts decoded
text in arbitrary pieces and hands back each top-level ``{...}`` object as
soon as its closing brace arrives.

Braces inside string literals do not count toward nesting depth, and a quote
preceded by a backslash does not end a string. Anything between top-level
objects (array brackets, commas, whitespace) is discarded.
"""


class JsonFrameParser:
    """Splits a stream of text into complete top-level JSON object strings."""

    def __init__(self) -> None:
        self._buffer = ""
        self._reset_scan()

    def _reset_scan(self) -> None:
        self._pos = 0
        self._depth = 0
        self._start = -1
        self._in_string = False
        self._escaped = False

    @property
    def buffer(self) -> str:
        """Text received but not yet returned as part of a complete object."""
        return self._buffer

    def feed(self, text: str) -> list[str]:
        """
        Append ``text`` and return every object completed by it, in order.

        Scan state is kept between calls, so each character is examined once.
        """
        if not text:
            return []
        self._buffer += text

        frames: list[str] = []
        buf = self._buffer
        i = self._pos
        while i < len(buf):
            ch = buf[i]
            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
            elif ch == '"':
                if self._depth > 0:
                    self._in_string = True
            elif ch == "{":
                if self._depth == 0:
                    self._start = i
                self._depth += 1
            elif ch == "}" and self._depth > 0:
                self._depth -= 1
                if self._depth == 0:
                    frames.append(buf[self._start : i + 1])
                    buf = buf[i + 1 :]
                    self._start = -1
                    i = 0
                    continue
            i += 1

        if self._depth == 0:
            # Nothing open: whatever is left is inter-object noise.
            self._buffer = ""
            self._reset_scan()
        else:
            # Keep only the open object; rebase the scan position onto it.
            self._buffer = buf[self._start :]
            self._pos = i - self._start
            self._start = 0
        return frames

    def reset(self) -> None:
        self._buffer = ""
        self._reset_scan()
