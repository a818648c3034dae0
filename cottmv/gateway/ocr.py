"""Text extraction from images via an external OCR tool.

Each image is handled by its own short-lived subprocess, so a crashing or
hanging recognizer takes down nothing but that one task. Concurrency, the
command line and the record of images that already failed all live on the
extractor instance.
"""

import asyncio
import os
import signal
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

MAX_OCR_TEXT_LENGTH = 10 * 1024


class OCRError(Exception):
    """Recognition failed, timed out, or was skipped because it failed before."""


@dataclass
class OCRContext:
    """Configuration plus failure tracking, passed explicitly instead of living in module state."""

    command: list[str]  # argv template; "{input}" and "{lang}" are substituted
    language: str = "eng"
    timeout: float = 60.0
    max_text_length: int = MAX_OCR_TEXT_LENGTH
    failed: set[str] = field(default_factory=set)

    def build_command(self, path: Path) -> list[str]:
        return [arg.replace("{input}", str(path)).replace("{lang}", self.language) for arg in self.command]


class OCRExtractor:
    def __init__(self, context: OCRContext, max_concurrent: int = 1):
        self.context = context
        self._slots = asyncio.Semaphore(max_concurrent)

    @staticmethod
    def supports(mime_type: str) -> bool:
        return mime_type.startswith("image/")

    def has_failed(self, path: Path) -> bool:
        return str(path) in self.context.failed

    def forget_failure(self, path: Path) -> None:
        self.context.failed.discard(str(path))

    async def extract_text(self, path: Path) -> str:
        if self.has_failed(path):
            raise OCRError(f"Skipping {path.name}: OCR failed on it before")

        async with self._slots:
            try:
                text = await self._run(path)
            except OCRError:
                self.context.failed.add(str(path))
                raise

        text = text.strip()
        if len(text) > self.context.max_text_length:
            logger.info(f"OCR text for {path.name} truncated from {len(text)} chars")
            text = text[: self.context.max_text_length]
        return text

    async def _run(self, path: Path) -> str:
        cmd = self.context.build_command(path)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise OCRError(f"Failed to start OCR tool {cmd[0]!r}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.context.timeout)
        except TimeoutError:
            with suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
            logger.warning(f"OCR timed out after {self.context.timeout}s on {path.name}")
            raise OCRError(f"OCR timed out after {self.context.timeout}s") from None
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            raise

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-300:]
            logger.warning(f"OCR failed with code {process.returncode} on {path.name}: {detail}")
            raise OCRError(f"OCR tool exited with code {process.returncode}: {detail}")

        return stdout.decode("utf-8", errors="replace")
