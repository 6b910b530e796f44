"""
Document processing module for the Gemini Document Transcriber.

This module handles media type detection for uploaded images and PDFs,
builds upload units from raw input files, and splits PDFs with many pages
into page-bounded parts that fit the model's input and output capacity.
"""

import io
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from pypdf import PdfReader, PdfWriter

from app.errors import InputValidationError
from app.models import UploadUnit


class DocumentFormat(Enum):
    """Supported document formats."""
    PDF = "application/pdf"
    JPEG = "image/jpeg"
    PNG = "image/png"
    WEBP = "image/webp"
    GIF = "image/gif"
    HEIC = "image/heic"
    HEIF = "image/heif"
    TIFF = "image/tiff"


EXTENSION_TO_FORMAT = {
    ".pdf": DocumentFormat.PDF,
    ".jpg": DocumentFormat.JPEG,
    ".jpeg": DocumentFormat.JPEG,
    ".png": DocumentFormat.PNG,
    ".webp": DocumentFormat.WEBP,
    ".gif": DocumentFormat.GIF,
    ".heic": DocumentFormat.HEIC,
    ".heif": DocumentFormat.HEIF,
    ".tif": DocumentFormat.TIFF,
    ".tiff": DocumentFormat.TIFF,
}

SUPPORTED_MIME_TYPES = frozenset(fmt.value for fmt in DocumentFormat) | {"image/jpg"}

# Declared types that carry no information and trigger detection
GENERIC_MIME_TYPES = ("", "application/octet-stream", "binary/octet-stream")

DEFAULT_MIME_TYPE = DocumentFormat.PDF.value


class UnsupportedFormatError(InputValidationError):
    """Exception raised when an input is neither an image nor a PDF."""
    pass


class DocumentProcessor:
    """
    Detects input formats, builds upload units and splits large PDFs.

    Args:
        max_pages: PDFs with more pages than this are split into parts of at
            most this many pages
    """

    def __init__(self, max_pages: int = 10):
        if max_pages < 1:
            raise ValueError("max_pages must be positive")
        self.max_pages = max_pages
        self.logger = logging.getLogger(__name__)

    def detect_mime_type(
        self,
        filename: Optional[str],
        data: bytes = b"",
        declared: Optional[str] = None
    ) -> str:
        """
        Resolve the media type of an input file.

        A specific declared type wins. Generic or missing types fall back to
        the file extension, then to the file signature, then to PDF.
        """
        declared = (declared or "").strip().lower()
        if declared not in GENERIC_MIME_TYPES:
            return "image/jpeg" if declared == "image/jpg" else declared

        extension = Path(filename or "").suffix.lower()
        fmt = EXTENSION_TO_FORMAT.get(extension)
        if fmt is not None:
            return fmt.value

        fmt = self._detect_format_from_magic_bytes(data)
        if fmt is not None:
            return fmt.value

        return DEFAULT_MIME_TYPE

    def _detect_format_from_magic_bytes(self, data: bytes) -> Optional[DocumentFormat]:
        header = data[:16]
        if not header:
            return None
        if header.startswith(b"%PDF"):
            return DocumentFormat.PDF
        if header.startswith(b"\xff\xd8\xff"):
            return DocumentFormat.JPEG
        if header.startswith(b"\x89PNG\r\n\x1a\n"):
            return DocumentFormat.PNG
        if header.startswith(b"RIFF") and header[8:12] == b"WEBP":
            return DocumentFormat.WEBP
        if header.startswith(b"GIF87a") or header.startswith(b"GIF89a"):
            return DocumentFormat.GIF
        if header[:4] in (b"II*\x00", b"MM\x00*"):
            return DocumentFormat.TIFF
        if header[4:8] == b"ftyp" and header[8:12] in (b"heic", b"heix", b"mif1", b"msf1"):
            return DocumentFormat.HEIC
        return None

    def is_supported(self, mime_type: str) -> bool:
        return mime_type in SUPPORTED_MIME_TYPES

    def validate_format(self, mime_type: str) -> None:
        """
        Raises:
            UnsupportedFormatError: If the media type is not an image or PDF
        """
        if not self.is_supported(mime_type):
            raise UnsupportedFormatError(
                f"Unsupported media type: {mime_type}. Supported: images (JPG, PNG, WEBP, "
                f"GIF, HEIC, TIFF) and PDF"
            )

    def build_unit(
        self,
        filename: Optional[str],
        data: bytes,
        declared_mime_type: Optional[str] = None,
        index: int = 0
    ) -> UploadUnit:
        """Create a validated upload unit for one input file."""
        name = Path(filename or f"document_{index + 1}").name
        mime_type = self.detect_mime_type(name, data, declared_mime_type)
        self.validate_format(mime_type)
        return UploadUnit(name=name, data=data, mime_type=mime_type, index=index, source_name=name)

    def split(self, unit: UploadUnit, max_pages: Optional[int] = None) -> list[UploadUnit]:
        """
        Split a PDF unit into parts of at most ``max_pages`` pages.

        Splitting only ever helps, so it fails soft: non-PDF units, PDFs at
        or under the threshold, and PDFs that cannot be parsed or rewritten
        come back unchanged as a single unit.

        Args:
            unit: The unit to split
            max_pages: Pages per part (defaults to the processor's threshold)

        Returns:
            Ordered list of units; parts are named ``<stem>_part<N><ext>``
        """
        max_pages = max_pages or self.max_pages
        if unit.mime_type != DocumentFormat.PDF.value:
            return [unit]

        try:
            reader = PdfReader(io.BytesIO(unit.data))
            total_pages = len(reader.pages)
            if total_pages <= max_pages:
                return [unit]

            stem = Path(unit.name).stem
            suffix = Path(unit.name).suffix or ".pdf"
            parts: list[UploadUnit] = []
            for part_number, start in enumerate(range(0, total_pages, max_pages), start=1):
                writer = PdfWriter()
                for page in reader.pages[start:start + max_pages]:
                    writer.add_page(page)
                buffer = io.BytesIO()
                writer.write(buffer)
                parts.append(
                    UploadUnit(
                        name=f"{stem}_part{part_number}{suffix}",
                        data=buffer.getvalue(),
                        mime_type=unit.mime_type,
                        index=unit.index,
                        source_name=unit.source_name or unit.name,
                        part=part_number,
                    )
                )
        except Exception as e:
            self.logger.warning(
                f"PDF split failed for {unit.name}, sending it whole: {e}"
            )
            return [unit]

        self.logger.info(
            f"Split {unit.name} ({total_pages} pages) into {len(parts)} parts "
            f"of up to {max_pages} pages"
        )
        return parts

    def prepare_units(self, files: list[tuple[Optional[str], bytes, Optional[str]]]) -> list[UploadUnit]:
        """
        Turn input files into the ordered list of units for one job.

        Args:
            files: ``(filename, data, declared_mime_type)`` tuples in the
                order the user arranged them

        Returns:
            Units in input order with split parts kept contiguous and
            ``index`` renumbered across the whole job
        """
        units: list[UploadUnit] = []
        for position, (filename, data, declared) in enumerate(files):
            unit = self.build_unit(filename, data, declared, index=position)
            units.extend(self.split(unit))
        return [
            UploadUnit(
                name=u.name,
                data=u.data,
                mime_type=u.mime_type,
                index=i,
                source_name=u.source_name,
                part=u.part,
            )
            for i, u in enumerate(units)
        ]

