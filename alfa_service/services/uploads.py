"""
Compilation of uploaded policy sources.

The language server only compiles files inside its workspace, so uploaded
source text is written to the policies directory under a unique name,
compiled, and removed again. The server is told about the removal so its
workspace model does not keep the deleted documents around.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePath

from alfa_service.compiler.orchestrator import CompileOrchestrator
from alfa_service.compiler.output import CompiledFile

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = ".alfa"


@dataclass(frozen=True)
class SourceFile:
    """Uploaded policy source."""

    file_name: str
    content: str


def _safe_name(file_name: str) -> str:
    # Drop directory components from both path flavours
    name = PurePath(file_name.replace("\\", "/")).name.strip()
    if not name or name in (".", ".."):
        name = "policy"
    if not PurePath(name).suffix:
        name += DEFAULT_SUFFIX
    return name


class PolicyUploadStore:
    """Writes uploaded sources into the policies directory and removes them."""

    def __init__(self, policies_dir: Path) -> None:
        self.policies_dir = Path(policies_dir)

    def write(self, file_name: str, content: str) -> Path:
        """Store ``content`` under a unique name derived from ``file_name``."""
        self.policies_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        unique = f"uploaded-{stamp}-{uuid.uuid4().hex[:8]}"
        path = self.policies_dir / f"{unique}-{_safe_name(file_name)}"
        path.write_text(content, encoding="utf-8")
        logger.info(f"Processing uploaded file: {path}")
        return path

    def remove(self, paths: Sequence[Path]) -> list[Path]:
        """Delete ``paths``; returns the ones that were actually removed."""
        removed = []
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning(f"Failed to clean up temporary file {path}: {exc}")
                continue
            removed.append(path)
            logger.debug(f"Cleaned up temporary file: {path}")
        return removed


async def compile_sources(
    orchestrator: CompileOrchestrator,
    store: PolicyUploadStore,
    sources: Sequence[SourceFile],
    settle_seconds: float = 0.0,
) -> list[CompiledFile]:
    """
    Compile uploaded sources in one cycle.

    A single source goes through ``compile_file``; several go through
    ``compile_files`` after ``settle_seconds``. Written files are always
    removed afterwards and their deletion is notified.
    """
    written: list[Path] = []
    try:
        for source in sources:
            written.append(await asyncio.to_thread(store.write, source.file_name, source.content))
        if len(written) == 1:
            return await orchestrator.compile_file(written[0])
        if settle_seconds > 0:
            await asyncio.sleep(settle_seconds)
        return await orchestrator.compile_files(written)
    finally:
        removed = await asyncio.to_thread(store.remove, written)
        if removed:
            await orchestrator.notify_deleted(removed)
