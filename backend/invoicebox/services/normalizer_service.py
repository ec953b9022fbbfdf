"""Format normalization for stored attachments.

Camera-native stills (HEIC/HEIF) are accepted at intake but are not
servable everywhere, so after storage they are converted to the
canonical JPEG encoding.  The conversion itself is a pluggable
capability (``FormatConverter``): the default runs an external command
line tool, the alternative decodes with Pillow in-process.

Ordering invariant of ``FormatNormalizer.convert``: the source blob is
deleted only after the canonical blob has been written.  Any failure
before that point leaves the source untouched.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Iterable, Sequence

from invoicebox.core.config import Settings
from invoicebox.core.errors import BlobNotFoundError, ConversionError, StorageError
from invoicebox.core.observability import sentry_breadcrumb
from invoicebox.services.storage_service import BlobStore
from invoicebox.utils.image_processing import encode_jpeg

logger = logging.getLogger(__name__)

CANONICAL_EXTENSION = ".jpg"


class ConverterError(Exception):
    """Raised by a converter backend; wrapped into ``ConversionError`` by the normalizer."""


class FormatConverter(ABC):
    """Turns the bytes of a non-canonical image into canonical JPEG bytes."""

    @abstractmethod
    async def convert(self, data: bytes, source_suffix: str) -> bytes: ...


class CommandLineConverter(FormatConverter):
    """Run an external tool, e.g. ``heif-convert`` or ImageMagick's ``magick``.

    ``command`` is an argv list; ``{src}`` and ``{dst}`` are replaced with
    temporary input and output paths.
    """

    def __init__(self, command: Sequence[str]) -> None:
        if not command:
            raise ValueError("converter command must not be empty")
        self.command = list(command)

    async def convert(self, data: bytes, source_suffix: str) -> bytes:
        try:
            workdir = Path(await asyncio.to_thread(tempfile.mkdtemp, prefix="invoicebox-convert-"))
        except OSError as e:
            raise ConverterError(f"cannot create work directory: {e}") from e
        try:
            return await self._run(workdir, data, source_suffix)
        except (OSError, ValueError, LookupError) as e:
            raise ConverterError(f"{type(e).__name__}: {e}") from e
        finally:
            await asyncio.to_thread(shutil.rmtree, workdir, True)

    async def _run(self, workdir: Path, data: bytes, source_suffix: str) -> bytes:
        src = workdir / f"source{source_suffix}"
        dst = workdir / f"output{CANONICAL_EXTENSION}"
        await asyncio.to_thread(src.write_bytes, data)
        argv = [arg.format(src=src, dst=dst) for arg in self.command]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConverterError(f"cannot start {argv[0]}: {e}") from e
        try:
            _stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeout or request abort: do not leave the tool running
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise
        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()[:500]
            raise ConverterError(f"{argv[0]} exited with {proc.returncode}: {message}")
        output = await asyncio.to_thread(_read_output, dst)
        if not output:
            raise ConverterError(f"{argv[0]} produced no output")
        return output


def _read_output(path: Path) -> bytes:
    return path.read_bytes() if path.exists() else b""


class PillowConverter(FormatConverter):
    """Decode and re-encode in-process with Pillow."""

    def __init__(self, quality: int = 90) -> None:
        self.quality = quality

    async def convert(self, data: bytes, source_suffix: str) -> bytes:
        try:
            return await asyncio.to_thread(encode_jpeg, data, self.quality)
        except Exception as e:
            raise ConverterError(f"Pillow could not decode {source_suffix} image: {e}") from e


def build_converter(config: Settings) -> FormatConverter:
    """Select the converter backend named by ``config.CONVERTER_BACKEND``."""
    backend = (config.CONVERTER_BACKEND or "command").lower()
    if backend == "pillow":
        return PillowConverter(quality=config.JPEG_QUALITY)
    if backend == "command":
        return CommandLineConverter(config.CONVERTER_COMMAND)
    raise ValueError(f"Unknown CONVERTER_BACKEND: {config.CONVERTER_BACKEND}")


class FormatNormalizer:
    """Convert stored non-canonical blobs into canonical ones."""

    def __init__(
        self,
        store: BlobStore,
        converter: FormatConverter,
        non_canonical_extensions: Iterable[str],
        timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.converter = converter
        self.non_canonical_extensions = {ext.lower() for ext in non_canonical_extensions}
        self.timeout = timeout

    def needs_conversion(self, reference: str) -> bool:
        return PurePosixPath(reference).suffix.lower() in self.non_canonical_extensions

    @staticmethod
    def canonical_name(reference: str) -> str:
        return PurePosixPath(reference).stem + CANONICAL_EXTENSION

    async def convert(self, reference: str) -> str:
        """Return the canonical reference for ``reference``.

        A canonical input is returned unchanged without touching storage.
        Raises ``ConversionError`` on any failure; the source blob then
        still exists.
        """
        target = await self.write_canonical(reference)
        if target != reference:
            await self.remove_source(reference, target)
        return target

    async def write_canonical(self, reference: str) -> str:
        """Write the canonical blob for ``reference`` and return its name.

        The source blob is left in place; callers that must record the new
        reference first call ``remove_source`` afterwards.
        """
        if not self.needs_conversion(reference):
            return reference

        suffix = PurePosixPath(reference).suffix.lower()
        target = self.canonical_name(reference)
        try:
            data = await self.store.read(reference)
        except StorageError as e:
            raise self._failed(reference, str(e)) from e
        try:
            converted = await asyncio.wait_for(self.converter.convert(data, suffix), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise self._failed(reference, f"converter timed out after {self.timeout:g}s") from e
        except ConverterError as e:
            raise self._failed(reference, str(e)) from e
        except Exception as e:
            # Any crash of a converter backend is a failure of this one file
            raise self._failed(reference, f"{type(e).__name__}: {e}") from e

        try:
            await self.store.write(target, converted)
        except StorageError as e:
            raise self._failed(reference, f"could not write {target}: {e.reason}") from e
        return target

    async def remove_source(self, reference: str, target: str) -> None:
        """Delete the source blob once ``target`` is in place; failures are logged."""
        try:
            await self.store.delete(reference)
        except BlobNotFoundError:
            logger.warning("[normalize] source %s vanished before removal", reference)
        except StorageError as e:
            # The canonical blob is in place; the unlinked source is a residual
            logger.error("[normalize] converted %s but could not remove source: %s", reference, e.reason)
            sentry_breadcrumb(
                category="normalize",
                message="normalize.source_residual",
                level="error",
                data={"reference": reference, "target": target},
            )
            return
        logger.info("[normalize] %s -> %s", reference, target)

    @staticmethod
    def _failed(reference: str, reason: str) -> ConversionError:
        logger.warning("[normalize] conversion failed for %s: %s", reference, reason)
        sentry_breadcrumb(
            category="normalize",
            message="normalize.failed",
            level="warning",
            data={"reference": reference, "reason": reason[:200]},
        )
        return ConversionError(reference, reason)
