"""File-type classification used by ``FILETYPE_ID`` rules and the binary gate."""

import logging
import mimetypes
from pathlib import Path
from typing import NamedTuple


class FileType(NamedTuple):
    name: str
    is_binary: bool


PLAIN_TEXT = FileType("PLAIN_TEXT", False)
UNKNOWN = FileType("UNKNOWN", True)

_TEXT_TYPES = {
    ".java": "JAVA",
    ".kt": "Kotlin",
    ".kts": "Kotlin",
    ".groovy": "Groovy",
    ".gradle": "Groovy",
    ".scala": "Scala",
    ".sc": "Scala",
    ".md": "Markdown",
    ".markdown": "Markdown",
    ".py": "Python",
    ".pyi": "Python",
    ".js": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".jsx": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript JSX",
    ".json": "JSON",
    ".yml": "YAML",
    ".yaml": "YAML",
    ".toml": "TOML",
    ".xml": "XML",
    ".html": "HTML",
    ".htm": "HTML",
    ".css": "CSS",
    ".scss": "SCSS",
    ".sh": "Shell Script",
    ".bash": "Shell Script",
    ".bat": "Batch",
    ".properties": "Properties",
    ".sql": "SQL",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".hpp": "C++",
    ".cs": "C#",
    ".go": "Go",
    ".rs": "Rust",
    ".rb": "Ruby",
    ".php": "PHP",
    ".txt": "PLAIN_TEXT",
}

_BINARY_TYPES = {
    ".png": "Image",
    ".jpg": "Image",
    ".jpeg": "Image",
    ".gif": "Image",
    ".bmp": "Image",
    ".ico": "Image",
    ".webp": "Image",
    ".zip": "ARCHIVE",
    ".jar": "ARCHIVE",
    ".gz": "ARCHIVE",
    ".tar": "ARCHIVE",
    ".7z": "ARCHIVE",
    ".class": "CLASS",
    ".exe": "Native",
    ".dll": "Native",
    ".so": "Native",
    ".dylib": "Native",
    ".pdf": "PDF",
    ".woff": "Font",
    ".woff2": "Font",
    ".ttf": "Font",
    ".pyc": "Python Bytecode",
}


def _looks_binary(file_path, sample_size=8192):
    """Return ``True`` when the start of ``file_path`` looks like binary data.

    A NUL byte marks the file as binary, as does a sample in which more than
    30% of the bytes are control characters other than tab, newline, form feed
    and carriage return. Unreadable files are reported as text so the read
    step can log the failure.
    """
    try:
        with open(file_path, 'rb') as f:
            sample = f.read(sample_size)
    except OSError:
        return False
    if not sample:
        return False
    if b'\x00' in sample:
        return True
    allowed = {9, 10, 12, 13}
    control = sum(1 for byte in sample if byte < 32 and byte not in allowed)
    return control / len(sample) > 0.3


def classify_file_type(file_path) -> FileType:
    """Return the :class:`FileType` of ``file_path``.

    Known extensions are looked up in a table; other files fall back to their
    MIME type and finally to sniffing the content.
    """
    path = Path(file_path)
    suffix = path.suffix.lower()

    if suffix in _TEXT_TYPES:
        return FileType(_TEXT_TYPES[suffix], False)
    if suffix in _BINARY_TYPES:
        return FileType(_BINARY_TYPES[suffix], True)

    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type and mime_type.startswith(('text/', 'application/json', 'application/xml')):
        return PLAIN_TEXT

    if _looks_binary(path):
        logging.debug("Content of %s looks binary.", path)
        return UNKNOWN
    return PLAIN_TEXT
