"""
ALFA to XACML compilation through the external language server.

This package does not parse ALFA itself. It drives the language server
and collects what it produces.

Key Components:
- orchestrator: serialized compile cycles (notify, settle, check, read)
- output: reading and clearing the shared output directory
- xml_format: deterministic pretty-printing of generated XACML

Design Principles:
- Single flight: one compile cycle per language server at a time
- No stale state: diagnostics and output are purged before every cycle
- Bounded: every cycle ends within a configured time
"""

from alfa_service.compiler.orchestrator import CompileOrchestrator, CycleState
from alfa_service.compiler.output import CompilationOutputReader, CompiledFile
from alfa_service.compiler.xml_format import format_xml, minify_xml, pretty_xml

__all__ = [
    "CompilationOutputReader",
    "CompileOrchestrator",
    "CompiledFile",
    "CycleState",
    "format_xml",
    "minify_xml",
    "pretty_xml",
]
