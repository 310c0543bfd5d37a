# utils/common.py
"""Common utilities: path management, hashing, and name/text normalization"""
import hashlib
import os
import re
from pathlib import Path

# ⚠️ DO NOT import settings here - causes circular import with config.py


# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def get_log_file_path() -> str:
    """Creates the log directory if it doesn't exist and returns the full log file path."""
    project_root = get_project_root()
    log_dir = os.path.join(project_root, 'log')

    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    return os.path.join(log_dir, 'bucket_rag.log')


# ============= Hashing =============

def get_content_hash(text: str) -> str:
    """Calculates the SHA256 hash of normalized document text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ============= Normalization =============

_BUCKET_NAME_DISALLOWED = re.compile(r"[^a-z0-9_-]")


def sanitize_bucket_name(name: str) -> str:
    """
    Turn a user-supplied bucket name into a directory-safe identifier.

    Trims, lower-cases, maps spaces to '-', then drops anything that is not
    an ASCII letter, digit, '-' or '_'. May return an empty string; callers
    decide whether that is an error.
    """
    cleaned = (name or "").strip().lower().replace(" ", "-")
    return _BUCKET_NAME_DISALLOWED.sub("", cleaned)


def normalize_text(text: str) -> str:
    """Unify line endings, drop NUL characters and trim surrounding whitespace."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    return text.strip()


def infer_media_kind(source: str) -> str:
    """Best-effort media kind from a source path or URL (value of core.domain.MediaKind)."""
    if not source:
        return "unknown"
    lowered = source.lower()
    if lowered.startswith(("http://", "https://")):
        suffix = Path(lowered.split("?", 1)[0]).suffix
        if not suffix or suffix in (".html", ".htm"):
            return "url"
    else:
        suffix = Path(lowered).suffix
    return _EXTENSION_KINDS.get(suffix.lstrip("."), "unknown")


_EXTENSION_KINDS = {
    "pdf": "pdf",
    "txt": "text",
    "md": "markdown",
    "markdown": "markdown",
    "mp3": "audio",
    "wav": "audio",
    "m4a": "audio",
    "flac": "audio",
    "mp4": "video",
    "mkv": "video",
    "webm": "video",
    "mov": "video",
    "png": "image",
    "jpg": "image",
    "jpeg": "image",
    "webp": "image",
}
