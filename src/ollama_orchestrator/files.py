"""Local attachment processing: text decoding and image encoding."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Sequence
import logging
import mimetypes
from pathlib import Path

from .exceptions import FileProcessingError
from .interfaces import CancelCheck, ProgressCallback
from .models import FileType, ProcessedFile
from .state import FileProcessingProgress, FileProcessingStatus

LOGGER = logging.getLogger(__name__)

IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".tiff", ".tif"}
)
TEXT_EXTENSIONS: frozenset[str] = frozenset(
    {".txt", ".md", ".markdown", ".rst", ".log", ".csv", ".tsv", ".ini", ".cfg"}
)
SOURCE_EXTENSIONS: frozenset[str] = frozenset(
    {
        ".py", ".js", ".ts", ".tsx", ".jsx", ".dart", ".java", ".kt", ".swift",
        ".c", ".h", ".cpp", ".hpp", ".cs", ".go", ".rs", ".rb", ".php", ".sh",
        ".html", ".css", ".scss", ".sql", ".xml", ".yaml", ".yml", ".toml",
    }
)


def detect_file_type(path: Path) -> FileType:
    suffix = path.suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return FileType.IMAGE
    if suffix == ".pdf":
        return FileType.PDF
    if suffix == ".json":
        return FileType.JSON
    if suffix in SOURCE_EXTENSIONS:
        return FileType.SOURCE_CODE
    if suffix in TEXT_EXTENSIONS:
        return FileType.TEXT
    return FileType.UNKNOWN


class LocalFileProcessor:
    """Read attached files from disk into ProcessedFile records.

    Missing or oversized files abort the batch with FileProcessingError.
    Files whose content cannot be used (PDFs, undecodable binaries) are
    reported with an error status and left out of the result.
    """

    def __init__(
        self,
        *,
        max_text_bytes: int = 10 * 1024 * 1024,
        max_image_bytes: int = 20 * 1024 * 1024,
    ) -> None:
        self.max_text_bytes = max_text_bytes
        self.max_image_bytes = max_image_bytes

    def _validate(self, raw_path: str) -> tuple[Path, FileType, int]:
        path = Path(raw_path).expanduser()
        if not path.is_file():
            raise FileProcessingError(f"File not found: {raw_path}")
        file_type = detect_file_type(path)
        size = path.stat().st_size
        limit = self.max_image_bytes if file_type == FileType.IMAGE else self.max_text_bytes
        if size > limit:
            raise FileProcessingError(
                f"{path.name} is too large (max {limit / (1024 * 1024):.1f}MB)"
            )
        return path, file_type, size

    @staticmethod
    def _read(path: Path, file_type: FileType, size: int) -> ProcessedFile | None:
        mime_type = mimetypes.guess_type(path.name)[0]
        if file_type == FileType.IMAGE:
            encoded = base64.b64encode(path.read_bytes()).decode("ascii")
            return ProcessedFile.from_path(
                path,
                file_type=file_type,
                size_bytes=size,
                base64_content=encoded,
                mime_type=mime_type,
            )
        if file_type == FileType.PDF:
            return None
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            return None
        return ProcessedFile.from_path(
            path,
            file_type=FileType.TEXT if file_type == FileType.UNKNOWN else file_type,
            size_bytes=size,
            text_content=text,
            mime_type=mime_type or "text/plain",
        )

    async def process_files(
        self,
        paths: Sequence[str],
        *,
        on_progress: ProgressCallback | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> list[ProcessedFile]:
        def report(path: str, progress: float, status: FileProcessingStatus) -> None:
            if on_progress is not None:
                on_progress(FileProcessingProgress(path, Path(path).name, progress, status))

        processed: list[ProcessedFile] = []
        for raw_path in paths:
            if is_cancelled is not None and is_cancelled():
                report(raw_path, 0.0, FileProcessingStatus.CANCELLED)
                LOGGER.info(
                    "files.cancelled",
                    extra={"event": "files.cancelled", "remaining": len(paths) - len(processed)},
                )
                break

            report(raw_path, 0.1, FileProcessingStatus.PROCESSING)
            try:
                path, file_type, size = self._validate(raw_path)
                result = await asyncio.to_thread(self._read, path, file_type, size)
            except FileProcessingError:
                report(raw_path, 1.0, FileProcessingStatus.ERROR)
                raise
            except OSError as exc:
                report(raw_path, 1.0, FileProcessingStatus.ERROR)
                raise FileProcessingError(f"Unable to read {raw_path}: {exc}") from exc

            if result is None:
                report(raw_path, 1.0, FileProcessingStatus.ERROR)
                LOGGER.warning(
                    "files.unsupported",
                    extra={"event": "files.unsupported", "path": raw_path, "file_type": file_type.value},
                )
                continue

            processed.append(result)
            report(raw_path, 1.0, FileProcessingStatus.COMPLETED)
            LOGGER.info(
                "files.processed",
                extra={
                    "event": "files.processed",
                    "path": raw_path,
                    "file_type": result.file_type.value,
                    "size_bytes": result.size_bytes,
                },
            )
        return processed
