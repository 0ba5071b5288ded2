from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*$")
_BOUNDARY_RE = re.compile(r"(?<=[.!?])(?:['\")\]]+)?\s+|[;:]\s+|\n")


@dataclass(frozen=True)
class NoteChunk:
    index: int
    byte_start: int
    byte_end: int
    text: str
    heading: str


@dataclass(frozen=True)
class _Block:
    text: str
    start: int
    end: int
    heading: str


def frontmatter_length(text: str) -> int:
    """Character length of a leading '---' YAML block (0 when absent)."""
    if not text.startswith("---"):
        return 0
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return 0
    consumed = len(lines[0])
    for line in lines[1:]:
        consumed += len(line)
        if line.strip() == "---":
            return consumed
    return 0


def _heading_label(stack: Dict[int, str]) -> str:
    return " > ".join(stack[level] for level in sorted(stack) if stack[level])


def _split_oversized(text: str, start: int, max_chars: int, overlap: int) -> List[Tuple[str, int, int]]:
    if len(text) <= max_chars:
        return [(text, start, start + len(text))]

    pieces: List[Tuple[str, int, int]] = []
    min_cut = max(1, max_chars // 2)
    pos = 0
    while pos < len(text):
        window_end = min(len(text), pos + max_chars)
        end = window_end
        if window_end < len(text):
            cuts = [m.end() for m in _BOUNDARY_RE.finditer(text, pos, window_end) if m.end() - pos >= min_cut]
            if cuts:
                end = cuts[-1]
            else:
                space = text.rfind(" ", pos, window_end)
                if space - pos >= min_cut:
                    end = space + 1
        pieces.append((text[pos:end], start + pos, start + end))
        if end >= len(text):
            break
        pos = max(end - overlap, pos + 1)
    return pieces


def _collect_blocks(body: str, base: int) -> List[_Block]:
    blocks: List[_Block] = []
    stack: Dict[int, str] = {}
    buf: List[str] = []
    buf_start: Optional[int] = None
    offset = base

    def flush() -> None:
        nonlocal buf, buf_start
        text = "".join(buf).rstrip("\r\n")
        if buf_start is not None and text.strip():
            blocks.append(
                _Block(text=text, start=buf_start, end=buf_start + len(text), heading=_heading_label(stack))
            )
        buf = []
        buf_start = None

    for line in body.splitlines(keepends=True):
        line_start = offset
        offset += len(line)
        m = _HEADING_RE.match(line.rstrip("\r\n"))
        if m:
            flush()
            level = len(m.group(1))
            stack = {lvl: title for lvl, title in stack.items() if lvl < level}
            stack[level] = m.group(2).strip()
            continue
        if not line.strip():
            flush()
            continue
        if buf_start is None:
            buf_start = line_start
        buf.append(line)
    flush()
    return blocks


def chunk_note(text: str, *, max_chars: int = 1200, overlap: int = 120) -> List[NoteChunk]:
    """
    Split a markdown note into heading-scoped chunks.

    Paragraphs under the same heading are packed together up to max_chars;
    paragraphs longer than max_chars are cut at sentence-ish boundaries with
    `overlap` characters of carry-over. Offsets are UTF-8 byte offsets into
    the original note text, frontmatter included.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    if overlap < 0 or overlap >= max_chars:
        raise ValueError("overlap must be in [0, max_chars)")
    if not text.strip():
        return []

    fm_len = frontmatter_length(text)
    blocks = _collect_blocks(text[fm_len:], fm_len)

    packed: List[_Block] = []
    for block in blocks:
        for piece, start, end in _split_oversized(block.text, block.start, max_chars, overlap):
            if not piece.strip():
                continue
            last = packed[-1] if packed else None
            if (
                last is not None
                and last.heading == block.heading
                and len(last.text) + 2 + len(piece) <= max_chars
            ):
                packed[-1] = _Block(text=f"{last.text}\n\n{piece}", start=last.start, end=end, heading=last.heading)
            else:
                packed.append(_Block(text=piece, start=start, end=end, heading=block.heading))

    # Character offsets -> byte offsets, computed once per distinct position.
    byte_at: Dict[int, int] = {}

    def to_bytes(char_pos: int) -> int:
        if char_pos not in byte_at:
            byte_at[char_pos] = len(text[:char_pos].encode("utf-8"))
        return byte_at[char_pos]

    return [
        NoteChunk(
            index=i,
            byte_start=to_bytes(block.start),
            byte_end=to_bytes(block.end),
            text=block.text,
            heading=block.heading,
        )
        for i, block in enumerate(packed)
    ]
