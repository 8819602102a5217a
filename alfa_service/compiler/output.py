"""
Access to the directory the language server writes compiled artifacts into.

The directory is written exclusively by the language server and read and
cleared exclusively by the orchestrator. Anything found in it before a
compile cycle is stale and gets purged.
"""

import logging
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from alfa_service.compiler.xml_format import pretty_xml
from alfa_service.core.errors import CleanupError, OutputReadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledFile:
    """One generated artifact."""

    file_name: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"fileName": self.file_name, "content": self.content}


class CompilationOutputReader:
    """
    Reads and clears the compilation output directory.

    Args:
        indent: Indentation used when pretty-printing XML artifacts
        read_retries: Extra attempts for a file whose read fails (the server
            may still be writing it)
        retry_delay: Seconds between attempts
    """

    def __init__(
        self,
        indent: int = 2,
        read_retries: int = 1,
        retry_delay: float = 0.05,
        formatter: Callable[[str, int], str] = pretty_xml,
    ) -> None:
        self.indent = indent
        self.read_retries = read_retries
        self.retry_delay = retry_delay
        self.formatter = formatter

    def clear(self, directory: Path) -> None:
        """
        Delete every entry of ``directory``, creating it when missing.

        Raises:
            CleanupError: If any entry could not be deleted
        """
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            entries = list(directory.iterdir())
        except OSError as exc:
            raise CleanupError(
                f"Failed to clean old output files: {exc}",
                details={"directory": str(directory)},
            ) from exc

        failures: dict[str, str] = {}
        for entry in entries:
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                failures[entry.name] = str(exc)

        if failures:
            raise CleanupError(
                f"Failed to clean old output files: {len(failures)} of {len(entries)} "
                f"entries could not be deleted",
                details={"directory": str(directory), "failures": failures},
            )
        if entries:
            logger.debug(f"Removed {len(entries)} stale output entries from {directory}")

    def read_all(self, directory: Path) -> list[CompiledFile]:
        """
        Read every regular file of ``directory``, sorted by name.

        XML artifacts are pretty-printed; other files are returned verbatim.
        A file that cannot be read after the retries is logged and skipped.

        Raises:
            OutputReadError: If the directory exists but cannot be listed
        """
        directory = Path(directory)
        if not directory.exists():
            return []
        try:
            entries = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            raise OutputReadError(
                f"Failed to read output directory: {exc}",
                details={"directory": str(directory)},
            ) from exc

        files = []
        for entry in entries:
            if not entry.is_file():
                continue
            content = self._read_text(entry)
            if content is None:
                continue
            if entry.suffix.lower() == ".xml":
                content = self.formatter(content, self.indent)
            files.append(CompiledFile(file_name=entry.name, content=content))
        return files

    def _read_text(self, path: Path) -> str | None:
        attempts = self.read_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                if attempt < attempts:
                    time.sleep(self.retry_delay)
                    continue
                logger.error(
                    f"Failed to read output file {path}: {exc}",
                    extra={"attempts": attempts},
                )
        return None
