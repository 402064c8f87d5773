"""Message content tags.

Attachments and tombstones are encoded as a prefix on the ``content`` string::

    plain text
    [IMAGE] <url> | <filename>
    [FILE] <url> | <filename>
    [AUDIO] <url>
    [DELETED] <original content>
"""

from __future__ import annotations

from dataclasses import dataclass

TEXT = "text"
IMAGE = "image"
FILE = "file"
AUDIO = "audio"
DELETED = "deleted"

IMAGE_TAG = "[IMAGE]"
FILE_TAG = "[FILE]"
AUDIO_TAG = "[AUDIO]"
DELETED_TAG = "[DELETED]"

PREVIEW_LIMIT = 120


@dataclass(frozen=True)
class ParsedContent:
    kind: str
    text: str = ""
    url: str = ""
    filename: str = ""


def _split_attachment(rest: str, default_name: str) -> tuple[str, str]:
    url, sep, name = rest.partition("|")
    name = name.strip() if sep else ""
    return url.strip(), name or default_name


def parse_content(content: str) -> ParsedContent:
    if content.startswith(DELETED_TAG):
        return ParsedContent(kind=DELETED, text=content[len(DELETED_TAG) :].strip())
    if content.startswith(IMAGE_TAG):
        url, name = _split_attachment(content[len(IMAGE_TAG) :], "Image")
        return ParsedContent(kind=IMAGE, url=url, filename=name)
    if content.startswith(FILE_TAG):
        url, name = _split_attachment(content[len(FILE_TAG) :], "Document")
        return ParsedContent(kind=FILE, url=url, filename=name)
    if content.startswith(AUDIO_TAG):
        return ParsedContent(kind=AUDIO, url=content[len(AUDIO_TAG) :].strip())
    return ParsedContent(kind=TEXT, text=content)


def image_content(url: str, filename: str) -> str:
    return f"{IMAGE_TAG} {url} | {filename}"


def file_content(url: str, filename: str) -> str:
    return f"{FILE_TAG} {url} | {filename}"


def audio_content(url: str) -> str:
    return f"{AUDIO_TAG} {url}"


def tombstone(content: str) -> str:
    """Mark ``content`` deleted; already tombstoned content is returned as-is."""

    if content.startswith(DELETED_TAG):
        return content
    return f"{DELETED_TAG} {content}"


def is_tombstone(content: str) -> bool:
    return content.startswith(DELETED_TAG)


def preview(content: str, limit: int = PREVIEW_LIMIT) -> str:
    """Short human-readable body used for notifications."""

    parsed = parse_content(content)
    if parsed.kind == IMAGE:
        return f"Photo: {parsed.filename}"
    if parsed.kind == FILE:
        return f"Document: {parsed.filename}"
    if parsed.kind == AUDIO:
        return "Voice note"
    if parsed.kind == DELETED:
        return "Message deleted"
    text = " ".join(parsed.text.split())
    if len(text) > limit:
        return text[: limit - 3].rstrip() + "..."
    return text
