import logging

from tripledger.adapters import ADAPTERS
from tripledger.errors import StructuralParseError, UnrecognizedFormatError


logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"


def decode_content(raw: bytes | str) -> str:
    if isinstance(raw, str):
        return raw.lstrip("\ufeff")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass
    # Spreadsheet exports from Windows hosts arrive as cp1252.
    try:
        return raw.decode("cp1252")
    except UnicodeDecodeError as exc:
        raise StructuralParseError(f"file is not valid UTF-8 or cp1252 text: {exc}") from exc


def detect_format(raw: bytes | str, file_name: str) -> str:
    if isinstance(raw, bytes) and raw.lstrip().startswith(PDF_MAGIC):
        raise UnrecognizedFormatError(
            f"{file_name}: binary PDF received; submit the text extracted from the manifest"
        )

    text = decode_content(raw)
    if not text.strip():
        raise UnrecognizedFormatError(f"{file_name}: file is empty")

    candidates = [adapter.format for adapter in ADAPTERS if adapter.matches(text)]
    if not candidates:
        raise UnrecognizedFormatError(f"{file_name}: no known vendor format matches this file's structure")
    if len(candidates) > 1:
        raise UnrecognizedFormatError(f"{file_name}: structure matches several formats: {', '.join(candidates)}")

    logger.info("format detected", extra={"file_name": file_name, "format": candidates[0]})
    return candidates[0]
