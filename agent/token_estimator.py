"""Cheap token estimation for local budget enforcement.

The estimate is a whitespace split, not a tokenizer. It only has to be
stable and monotonic so the context window can be trimmed before a prompt
grows unbounded; it will not match the provider's own accounting.
"""


def estimate_tokens(line: str) -> int:
    """Return the number of whitespace-delimited segments in ``line``."""
    if not line:
        return 0
    return len(line.split())


def estimate_turn_tokens(text: str, label: str) -> int:
    """Estimate a rendered turn: its text plus the speaker label in front of it."""
    return estimate_tokens(text) + estimate_tokens(label)
