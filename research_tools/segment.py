import re
from typing import List, Tuple

# Split after runs of newlines, and after sentence-ending punctuation plus spaces.
_BOUNDARY = re.compile(r"\n+|(?<=[.!?。！？])[ \t]+")


def _split_points(text: str) -> List[int]:
    points = {0, len(text)}
    for m in _BOUNDARY.finditer(text):
        points.add(m.end())
    return sorted(points)


def _hard_split(text: str, start: int, end: int, max_len: int) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    while end - start > max_len:
        cut = text.rfind(" ", start + 1, start + max_len)
        if cut <= start:
            cut = start + max_len
        else:
            cut += 1
        spans.append((start, cut))
        start = cut
    spans.append((start, end))
    return spans


def segment_text(text: str, max_chunk_length: int = 500) -> Tuple[List[str], List[Tuple[int, int]]]:
    """Chunk ``text`` into sentence-aligned pieces with ``[start, end)`` offsets.

    ``text[start:end] == chunk`` for every returned pair. Chunks never span a
    line break; trailing spaces are left out, trailing newlines are kept.
    """
    if not text:
        return [], []
    max_len = max(1, int(max_chunk_length))
    points = _split_points(text)
    pieces: List[Tuple[int, int]] = []
    for a, b in zip(points, points[1:]):
        pieces.extend(_hard_split(text, a, b, max_len))

    spans: List[Tuple[int, int]] = []
    cur_start, cur_end = -1, -1
    for a, b in pieces:
        if cur_start < 0:
            cur_start, cur_end = a, b
            continue
        line_closed = text[cur_end - 1] == "\n"
        if line_closed or (b - cur_start) > max_len:
            spans.append((cur_start, cur_end))
            cur_start, cur_end = a, b
        else:
            cur_end = b
    if cur_start >= 0:
        spans.append((cur_start, cur_end))

    chunks: List[str] = []
    positions: List[Tuple[int, int]] = []
    for s, e in spans:
        piece = text[s:e]
        e = s + len(piece.rstrip(" \t"))
        if not text[s:e].strip():
            continue
        chunks.append(text[s:e])
        positions.append((s, e))
    return chunks, positions
