"""Local file storage for task attachments.

Only file metadata is persisted by the task engine; the bytes are written here
under ``{upload_dir}/tasks/<category>/`` with a timestamped unique name.
"""
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from .config import Settings
from .errors import AttachmentError
from .models import AttachmentCategory, utcnow

logger = logging.getLogger("permit-core.file_storage")

CHUNK_SIZE = 64 * 1024


@dataclass
class IncomingFile:
    """An uploaded file as received from the caller."""

    filename: str
    file: BinaryIO
    content_type: Optional[str] = None


@dataclass
class StoredFile:
    """Where and how an uploaded file was stored."""

    file_name: str
    path: str
    size: int
    content_type: str


class LocalFileStorage:
    """Stores attachments on the local filesystem."""

    def __init__(self, settings: Settings):
        self.root = Path(settings.upload_dir)
        self.max_bytes = settings.max_upload_bytes
        self.allowed_extensions = {ext.lower() for ext in settings.allowed_extensions}

    def validate(self, filename: str) -> None:
        """
        Check that a file name carries an allowed extension.

        Raises:
            AttachmentError: If the name is empty or the extension is not allowed
        """
        if not filename:
            raise AttachmentError("Uploaded file has no name")
        ext = Path(filename).suffix.lower()
        if ext not in self.allowed_extensions:
            raise AttachmentError(
                f"File type not allowed: {filename}. "
                f"Allowed types: {', '.join(sorted(self.allowed_extensions))}",
                file_name=filename,
            )

    def save(self, upload: IncomingFile, category: AttachmentCategory) -> StoredFile:
        """
        Validate and write an upload to disk.

        Args:
            upload: The incoming file
            category: Attachment category, used as the storage sub-directory

        Returns:
            StoredFile describing the written file

        Raises:
            AttachmentError: If validation fails or the file cannot be written
        """
        self.validate(upload.filename)

        directory = self.root / "tasks" / category.name.lower()
        ext = Path(upload.filename).suffix.lower()
        unique_name = f"{utcnow().strftime('%Y%m%d%H%M%S')}_{uuid.uuid4()}{ext}"
        target = directory / unique_name

        try:
            directory.mkdir(parents=True, exist_ok=True)
            size = 0
            with open(target, "wb") as dst:
                while True:
                    chunk = upload.file.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise AttachmentError(
                            f"File {upload.filename} exceeds the maximum size of {self.max_bytes} bytes",
                            file_name=upload.filename,
                        )
                    dst.write(chunk)
        except AttachmentError:
            target.unlink(missing_ok=True)
            raise
        except OSError as exc:
            target.unlink(missing_ok=True)
            logger.error(f"Failed to store {upload.filename}: {exc}", exc_info=True)
            raise AttachmentError(f"Failed to store file {upload.filename}: {exc}", file_name=upload.filename) from exc

        content_type = upload.content_type or mimetypes.guess_type(upload.filename)[0] or "application/octet-stream"
        logger.debug(f"Stored {upload.filename} at {target} ({size} bytes)")
        return StoredFile(file_name=upload.filename, path=str(target), size=size, content_type=content_type)

    def delete(self, path: str) -> None:
        """Remove a stored file. Missing files are ignored."""
        if not path:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(f"Could not delete stored file {path}: {exc}")
