import regex
from typing import List, Tuple

# Patterns for free-text previews that may reach persisted fields or logs.
# Order matters: earlier patterns win on overlap.
PATTERNS: List[Tuple[str, "regex.Pattern"]] = [
    ("EMAIL", regex.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    ("CREDIT_CARD", regex.compile(r"\b(?:\d{4}[\s-]?){3}\d{4}\b")),
    ("SSN", regex.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("PHONE", regex.compile(r"(?<!\w)(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)\d{3}[-.\s]?\d{4}\b")),
    ("IP_ADDRESS", regex.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
]

PREVIEW_MAX_CHARS = 200


def find_spans(text: str) -> List[Tuple[str, Tuple[int, int]]]:
    """Return non-overlapping (label, (start, end)) spans sorted by position."""
    spans = []
    for label, pat in PATTERNS:
        for m in pat.finditer(text):
            spans.append((label, (m.start(), m.end())))
    spans.sort(key=lambda x: (x[1][0], -x[1][1]))
    merged = []
    for label, (s, e) in spans:
        if merged and s < merged[-1][1][1]:
            continue
        merged.append((label, (s, e)))
    return merged


def scrub(text: str) -> str:
    """Mask PII-looking substrings as `<LABEL>`."""
    out = []
    last = 0
    for label, (s, e) in find_spans(text):
        out.append(text[last:s])
        out.append(f"<{label}>")
        last = e
    out.append(text[last:])
    return "".join(out)


def contains_pii(text: str) -> bool:
    return bool(find_spans(text))


def safe_preview(text: str, limit: int = PREVIEW_MAX_CHARS) -> str:
    """Whitespace-compacted, scrubbed, length-bounded preview."""
    compact = " ".join(text.split())
    return scrub(compact)[:limit]
