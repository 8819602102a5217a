"""
Unit tests for diagnostics records and the per-document collector.
"""

from lsprotocol import types

from alfa_service.lsp.diagnostics import DiagnosticRecord, DiagnosticsCollector
from tests.fakes import error_diagnostic


def record(uri: str, line: int, character: int, severity=types.DiagnosticSeverity.Error):
    return DiagnosticRecord(
        uri=uri, severity=severity, line=line, character=character, message=f"issue at {line}"
    )


class TestDiagnosticRecord:
    """Tests for DiagnosticRecord."""

    def test_from_lsp(self):
        diagnostic = types.Diagnostic(
            range=types.Range(
                start=types.Position(line=2, character=8),
                end=types.Position(line=2, character=13),
            ),
            message="mismatched input 'ERROR'",
            severity=types.DiagnosticSeverity.Error,
            code=1001,
        )

        rec = DiagnosticRecord.from_lsp("file:///w/p.alfa", diagnostic)

        assert rec.line == 2
        assert rec.character == 8
        assert rec.code == "1001"
        assert rec.is_error

    def test_describe_is_one_based(self):
        rec = DiagnosticRecord.from_lsp("file:///w/p.alfa", error_diagnostic(0, 0, "boom"))
        assert rec.describe() == "Line 1, Col 1: boom"

    def test_missing_severity_is_not_an_error(self):
        rec = record("file:///w/p.alfa", 0, 0, severity=None)
        assert not rec.is_error
        assert rec.severity_name == "unspecified"

    def test_to_dict(self):
        rec = record("file:///w/p.alfa", 4, 2, severity=types.DiagnosticSeverity.Warning)
        assert rec.to_dict() == {
            "uri": "file:///w/p.alfa",
            "severity": "warning",
            "line": 5,
            "column": 3,
            "message": "issue at 4",
        }


class TestDiagnosticsCollector:
    """Tests for DiagnosticsCollector."""

    def test_push_replaces_previous_list(self):
        collector = DiagnosticsCollector()
        collector.record("file:///a", [record("file:///a", 1, 1)])
        collector.record("file:///a", [])

        assert collector.documents() == ["file:///a"]
        assert not collector.has_errors()
        assert len(collector) == 1

    def test_errors_are_sorted_by_document_and_position(self):
        collector = DiagnosticsCollector()
        collector.record(
            "file:///b",
            [record("file:///b", 3, 0), record("file:///b", 1, 5)],
        )
        collector.record(
            "file:///a",
            [
                record("file:///a", 7, 0),
                record("file:///a", 0, 0, severity=types.DiagnosticSeverity.Warning),
            ],
        )

        errors = collector.errors()

        assert [(e.uri, e.line) for e in errors] == [
            ("file:///a", 7),
            ("file:///b", 1),
            ("file:///b", 3),
        ]
        assert collector.documents() == ["file:///a", "file:///b"]

    def test_clear(self):
        collector = DiagnosticsCollector()
        collector.record("file:///a", [record("file:///a", 0, 0)])
        collector.clear()

        assert len(collector) == 0
        assert collector.errors() == []
