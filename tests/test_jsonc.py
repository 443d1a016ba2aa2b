"""Tests for the JSON-with-comments loader."""

from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from aspire_devcontainer.jsonc import JsoncError, load_path, loads, strip_comments

DEVCONTAINER_JSON = dedent(
    """
    // Aspire devcontainer
    {
        "name": "Aspire", // trailing comment
        /* block
           comment */
        "image": "mcr.microsoft.com/devcontainers/dotnet",
        "forwardPorts": [18888, 4317,],
        "remoteEnv": {
            "URL": "http://localhost:18888/*not-a-comment*/",
            "PATTERN": "a//b",
        },
    }
    """
)


class TestLoads:
    def test_devcontainer_style_document(self) -> None:
        payload = loads(DEVCONTAINER_JSON)

        assert payload["name"] == "Aspire"
        assert payload["forwardPorts"] == [18888, 4317]
        assert payload["remoteEnv"]["URL"] == "http://localhost:18888/*not-a-comment*/"
        assert payload["remoteEnv"]["PATTERN"] == "a//b"

    def test_escaped_quotes_inside_strings(self) -> None:
        assert loads('{"a": "say \\"hi\\" // still text"}') == {"a": 'say "hi" // still text'}

    def test_comma_inside_string_before_brace_is_kept(self) -> None:
        assert loads('{"a": ",}"}') == {"a": ",}"}

    def test_positions_are_preserved(self) -> None:
        text = '/* one\ntwo */ {"a": 1}'

        stripped = strip_comments(text)

        assert stripped.count("\n") == 1
        assert len(stripped) == len(text)

    def test_syntax_error_reports_line_and_column(self) -> None:
        with pytest.raises(JsoncError) as excinfo:
            loads('{\n  // fine\n  "a": 1\n  "b": 2\n}', source="devcontainer.json")

        assert excinfo.value.line == 4
        assert excinfo.value.source == "devcontainer.json"
        assert str(excinfo.value).startswith("devcontainer.json:4:")

    def test_unterminated_block_comment(self) -> None:
        with pytest.raises(JsoncError, match="unterminated"):
            loads('{"a": 1}\n  /* open')

    def test_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            loads("{")


def test_load_path(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text('{"version": "2.0.0", // tasks\n "tasks": []}', encoding="utf-8")

    assert load_path(path) == {"version": "2.0.0", "tasks": []}


def test_load_path_rejects_invalid_utf8(tmp_path: Path) -> None:
    path = tmp_path / "devcontainer.json"
    path.write_bytes(b'{\n  "name": "\xff"\n}\n')

    with pytest.raises(JsoncError, match="not valid UTF-8") as excinfo:
        load_path(path)

    assert (excinfo.value.line, excinfo.value.column) == (2, 12)
    assert excinfo.value.source == str(path)
