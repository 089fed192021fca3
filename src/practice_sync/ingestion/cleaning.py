"""Text cleaning, MIME decoding and chunking utilities."""

from __future__ import annotations

import base64
import binascii
import html
import re
from email.utils import getaddresses

from practice_sync.ingestion.models import Participant

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\b[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_INLINE_WHITESPACE_RE = re.compile(r"[ \t\r\f\v\xa0]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")


def html_to_text(raw_html: str) -> str:
    """Convert HTML markup into plain text, keeping paragraph breaks."""

    if not raw_html:
        return ""
    no_scripts = _SCRIPT_STYLE_RE.sub(" ", raw_html)
    with_breaks = _BLOCK_TAG_RE.sub("\n", no_scripts)
    stripped = _TAG_RE.sub(" ", with_breaks)
    return normalize_whitespace(html.unescape(stripped))


def normalize_whitespace(text: str) -> str:
    """Collapse runs of spaces, keep at most one blank line between paragraphs."""

    lines = [_INLINE_WHITESPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    joined = "\n".join(lines)
    return _BLANK_LINES_RE.sub("\n\n", joined).strip()


def decode_base64url(data: str) -> str:
    """Decode a Gmail-style base64url body; undecodable input yields an empty string."""

    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def parse_address_list(value: str | None, *, role: str) -> list[Participant]:
    """Parse an RFC 5322 address header into participants."""

    if not value:
        return []
    participants: list[Participant] = []
    for name, address in getaddresses([value]):
        email = address.strip().lower() or None
        display = name.strip() or None
        if email is None and display is None:
            continue
        participants.append(Participant(email=email, name=display, role=role))
    return participants


def chunk_text(text: str, max_chars: int) -> list[str]:
    """Split text into chunks of at most ``max_chars``.

    Paragraph boundaries are preferred, then sentence boundaries, then a hard
    cut. Chunking is deterministic so identical text always yields identical
    chunks and therefore identical content hashes.
    """

    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    normalized = text.strip()
    if not normalized:
        return []
    if len(normalized) <= max_chars:
        return [normalized]

    # (paragraph index, text); pieces of one paragraph rejoin with a space.
    pieces: list[tuple[int, str]] = []
    for index, paragraph in enumerate(normalized.split("\n\n")):
        if len(paragraph) <= max_chars:
            pieces.append((index, paragraph))
            continue
        for sentence in _SENTENCE_END_RE.split(paragraph):
            while len(sentence) > max_chars:
                pieces.append((index, sentence[:max_chars]))
                sentence = sentence[max_chars:]
            if sentence:
                pieces.append((index, sentence))

    chunks: list[str] = []
    current = ""
    current_paragraph = -1
    for index, piece in pieces:
        separator = " " if index == current_paragraph else "\n\n"
        candidate = f"{current}{separator}{piece}" if current else piece
        if len(candidate) > max_chars and current:
            chunks.append(current.strip())
            candidate = piece
        current = candidate
        current_paragraph = index
    if current.strip():
        chunks.append(current.strip())
    return chunks
