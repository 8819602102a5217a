"""
Diagnostics reported by the language server.

The language server multiplexes every open document through a single
``textDocument/publishDiagnostics`` stream, and each push replaces the
previous list for its document. The collector therefore keeps one list per
document URI and is shared by every compile cycle of an orchestrator;
cycles must be serialized for its content to belong to one request.
"""

from __future__ import annotations

from dataclasses import dataclass

from lsprotocol import types

ERROR = types.DiagnosticSeverity.Error


@dataclass(frozen=True)
class DiagnosticRecord:
    """One issue reported for one document. Positions are 0-based as on the wire."""

    uri: str
    severity: types.DiagnosticSeverity | None
    line: int
    character: int
    message: str
    source: str | None = None
    code: str | None = None

    @classmethod
    def from_lsp(cls, uri: str, diagnostic: types.Diagnostic) -> DiagnosticRecord:
        start = diagnostic.range.start
        return cls(
            uri=uri,
            severity=diagnostic.severity,
            line=start.line,
            character=start.character,
            message=diagnostic.message,
            source=diagnostic.source,
            code=None if diagnostic.code is None else str(diagnostic.code),
        )

    @property
    def is_error(self) -> bool:
        return self.severity == ERROR

    @property
    def severity_name(self) -> str:
        return self.severity.name.lower() if self.severity is not None else "unspecified"

    def describe(self) -> str:
        """``Line L, Col C: message`` with 1-based line and column."""
        return f"Line {self.line + 1}, Col {self.character + 1}: {self.message}"

    def to_dict(self) -> dict[str, object]:
        return {
            "uri": self.uri,
            "severity": self.severity_name,
            "line": self.line + 1,
            "column": self.character + 1,
            "message": self.message,
        }


class DiagnosticsCollector:
    """Latest diagnostics per document URI."""

    def __init__(self) -> None:
        self._by_uri: dict[str, list[DiagnosticRecord]] = {}

    def clear(self) -> None:
        self._by_uri.clear()

    def record(self, uri: str, diagnostics: list[DiagnosticRecord]) -> None:
        """Replace the diagnostics of ``uri``."""
        self._by_uri[uri] = list(diagnostics)

    def has_errors(self) -> bool:
        return any(d.is_error for records in self._by_uri.values() for d in records)

    def errors(self) -> list[DiagnosticRecord]:
        """Error diagnostics ordered by document, then position."""
        found = [d for records in self._by_uri.values() for d in records if d.is_error]
        return sorted(found, key=lambda d: (d.uri, d.line, d.character))

    def documents(self) -> list[str]:
        return sorted(self._by_uri)

    def __len__(self) -> int:
        return len(self._by_uri)
