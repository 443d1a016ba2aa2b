"""Loader for JSON with comments (``devcontainer.json``, ``tasks.json``)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any


class JsoncError(ValueError):
    """Raised when a JSONC document does not parse."""

    def __init__(self, message: str, line: int, column: int, source: str | None = None) -> None:
        self.message = message
        self.line = line
        self.column = column
        self.source = source
        where = f"{source}:" if source else ""
        super().__init__(f"{where}{line}:{column}: {message}")


def strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments and trailing commas outside strings.

    Comment bodies are replaced by whitespace (newlines kept) so positions
    reported by the JSON parser still match the original document.
    """
    result: list[str] = []
    i = 0
    length = len(text)
    in_string = False
    pending_comma: int | None = None

    while i < length:
        char = text[i]
        if in_string:
            result.append(char)
            if char == "\\" and i + 1 < length:
                result.append(text[i + 1])
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue

        if char == '"':
            in_string = True
            pending_comma = None
            result.append(char)
            i += 1
            continue

        if text.startswith("//", i):
            end = text.find("\n", i)
            end = length if end == -1 else end
            result.append(" " * (end - i))
            i = end
            continue

        if text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end == -1:
                line = text.count("\n", 0, i) + 1
                column = i - (text.rfind("\n", 0, i) + 1) + 1
                raise JsoncError("unterminated block comment", line, column)
            end += 2
            result.append("".join("\n" if c == "\n" else " " for c in text[i:end]))
            i = end
            continue

        if char == ",":
            pending_comma = len(result)
        elif char in "}]":
            if pending_comma is not None:
                result[pending_comma] = " "
            pending_comma = None
        elif not char.isspace():
            pending_comma = None
        result.append(char)
        i += 1

    return "".join(result)


def loads(text: str, source: str | None = None) -> Any:
    try:
        return json.loads(strip_comments(text))
    except JsoncError as exc:
        raise JsoncError(exc.message, exc.line, exc.column, source) from exc
    except json.JSONDecodeError as exc:
        raise JsoncError(exc.msg, exc.lineno, exc.colno, source) from exc


def load_path(path: Path) -> Any:
    data = path.read_bytes()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        before = data[: exc.start]
        line = before.count(b"\n") + 1
        column = exc.start - (before.rfind(b"\n") + 1) + 1
        raise JsoncError(f"not valid UTF-8 ({exc.reason})", line, column, str(path)) from exc
    return loads(text, source=str(path))
