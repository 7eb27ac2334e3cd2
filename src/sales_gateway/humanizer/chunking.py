"""
Reply splitting for human-like delivery.

A reply engine answer arrives as one block of text. People send several
short messages instead, so the reply is cut at sentence boundaries and
greedily repacked into chunks no longer than a character cap.
"""
import re
from typing import Optional

# Split after sentence terminators, and at blank-line paragraph breaks
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?…])\s+|\n\s*\n")
TERMINAL_PUNCTUATION = (".", "!", "?", "…")


def split_sentences(text: str) -> list[str]:
    """Split text into stripped, non-empty sentences."""
    if not text:
        return []
    return [part.strip() for part in SENTENCE_BOUNDARY.split(text.strip()) if part and part.strip()]


def ensure_terminal_punctuation(sentence: str) -> str:
    """Append a period if the sentence doesn't already end like one."""
    if sentence.endswith(TERMINAL_PUNCTUATION):
        return sentence
    return sentence + "."


def split_reply(reply: str, max_chunk_chars: int, max_chunks: Optional[int] = None) -> list[str]:
    """
    Split a reply into paced-delivery chunks.

    Sentences are packed greedily into chunks of at most `max_chunk_chars`.
    A single sentence longer than the cap becomes its own chunk and is never
    truncated. When `max_chunks` is set, everything past the limit is merged
    into the last allowed chunk.

    Args:
        reply: Full reply text.
        max_chunk_chars: Character cap per chunk.
        max_chunks: Optional upper bound on the number of chunks.

    Returns:
        Ordered list of chunks (empty for a blank reply).

    Example:
        >>> split_reply("Hola. Tenemos tres opciones. ¿Cuál prefieres?", 25)
        ['Hola.', 'Tenemos tres opciones.', '¿Cuál prefieres?']
    """
    if max_chunk_chars < 1:
        raise ValueError("max_chunk_chars must be positive")
    if max_chunks is not None and max_chunks < 1:
        raise ValueError("max_chunks must be positive")

    chunks: list[str] = []
    current = ""
    for sentence in split_sentences(reply):
        sentence = ensure_terminal_punctuation(sentence)
        if not current:
            current = sentence
        elif len(current) + 1 + len(sentence) <= max_chunk_chars:
            current = f"{current} {sentence}"
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)

    if max_chunks is not None and len(chunks) > max_chunks:
        head = chunks[:max_chunks - 1]
        tail = " ".join(chunks[max_chunks - 1:])
        chunks = head + [tail]

    return chunks
