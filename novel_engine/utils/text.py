"""Text helpers shared by the context, quality and continuity components."""

import json
import re

_SENTENCE_SEPARATORS = ['. ', '。', '！', '？', '! ', '? ', '\n']


def count_words(text: str | None) -> int:
    """Count whitespace-separated words."""
    if not text:
        return 0
    return len(text.split())


def split_paragraphs(text: str) -> list[str]:
    """Split on blank lines, dropping empty paragraphs and scene-break markers."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text or "")]
    return [p for p in paragraphs if p and p != "***"]


def split_sentences(text: str) -> list[str]:
    sentences = re.split(r"(?<=[.!?。！？])\s+", text or "")
    return [s.strip() for s in sentences if s.strip()]


def last_paragraphs(text: str, count: int = 2) -> str:
    """Return the closing ``count`` paragraphs of a chapter."""
    paragraphs = split_paragraphs(text)
    return "\n\n".join(paragraphs[-count:])


def contains_term(text: str, term: str) -> bool:
    """Case-insensitive whole-word search."""
    if not term:
        return False
    return re.search(rf"\b{re.escape(term)}\b", text, re.IGNORECASE) is not None


def _repair_truncated_json(text: str) -> str:
    """Close a JSON document that was cut off mid-stream."""
    if not text or text[0] not in ('{', '['):
        return text

    last_end = len(text)
    for ch in ('}', ']', '"'):
        while True:
            pos = text.rfind(ch, 0, last_end)
            if pos <= 0:
                break
            candidate = text[:pos + 1].rstrip().rstrip(',')
            stack = []
            in_str = False
            esc = False
            for c in candidate:
                if esc:
                    esc = False
                    continue
                if c == '\\' and in_str:
                    esc = True
                    continue
                if c == '"':
                    in_str = not in_str
                    continue
                if in_str:
                    continue
                if c in ('{', '['):
                    stack.append('}' if c == '{' else ']')
                elif c in ('}', ']') and stack:
                    stack.pop()
            closing = ''.join(reversed(stack))
            try:
                json.loads(candidate + closing)
                return candidate + closing
            except json.JSONDecodeError:
                last_end = pos
                continue

    return text


def parse_json_response(text: str) -> dict | list:
    """Extract JSON from an LLM response that may contain markdown fences."""
    # Try to find JSON block in markdown code fence
    m = re.search(r'```(?:json)?\s*\n(.*?)\n```', text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass
    cleaned = text.strip()
    if cleaned.startswith('{') or cleaned.startswith('['):
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
    # Find the outermost JSON structure
    for open_ch, close_ch in [('{', '}'), ('[', ']')]:
        start = cleaned.find(open_ch)
        if start == -1:
            continue
        end = cleaned.rfind(close_ch)
        if end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                pass
    # Last resort: try to repair truncated JSON
    for open_ch in ('{', '['):
        start = cleaned.find(open_ch)
        if start != -1:
            try:
                return json.loads(_repair_truncated_json(cleaned[start:]))
            except (json.JSONDecodeError, ValueError):
                pass
    raise ValueError(f"Could not parse JSON from response: {text[:200]}...")


def truncate_text(text: str, max_chars: int, from_end: bool = False) -> str:
    """Truncate text at sentence boundaries.

    Args:
        text: The text to truncate.
        max_chars: Maximum number of characters.
        from_end: If True, keep the end of the text instead of the beginning.
    """
    if len(text) <= max_chars:
        return text

    if from_end:
        chunk = text[-max_chars:]
        for sep in _SENTENCE_SEPARATORS:
            idx = chunk.find(sep)
            if idx != -1 and idx < 200:
                return chunk[idx + len(sep):]
        return chunk
    chunk = text[:max_chars]
    best = -1
    for sep in _SENTENCE_SEPARATORS:
        idx = chunk.rfind(sep)
        if idx != -1 and idx >= max_chars - 200:
            best = max(best, idx + len(sep))
    if best == -1:
        best = max_chars
    return text[:best].rstrip()
