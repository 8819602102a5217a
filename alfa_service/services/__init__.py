"""
Services package for the ALFA compiler service.

Contains the logic between the HTTP routes and the compile orchestrator.
"""

from alfa_service.services.uploads import PolicyUploadStore, SourceFile, compile_sources

__all__ = ["PolicyUploadStore", "SourceFile", "compile_sources"]
