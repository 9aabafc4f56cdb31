"""Display formatting for citation text.

Source passages are transcripts with ``Questioner:`` / ``Ra:`` speaker labels.
A paragraph break in the source is a period followed directly by an upper-case
letter (no space). Sentence numbers are 1-based and run across the whole quote.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

SpeakerType = Literal["questioner", "ra", "text"]

_SPEAKER_LABELS: dict[SpeakerType, str] = {
    "questioner": "Questioner:",
    "ra": "Ra:",
}

_GLUED_PERIOD = re.compile(r"\.(?=[A-Z])")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_SPEAKER_BREAK = re.compile(r"(?=\s(?:Questioner:|Ra:))")


@dataclass(frozen=True)
class Paragraph:
    type: SpeakerType
    content: str
    sentence_start: int
    sentence_end: int


def split_into_sentences(text: str) -> list[str]:
    normalized = _GLUED_PERIOD.sub(". ", text)
    return [part.strip() for part in _SENTENCE_BREAK.split(normalized) if part.strip()]


def count_sentences(text: str) -> int:
    return len([s for s in _SENTENCE_BREAK.split(text) if s.strip()])


def parse_into_paragraphs(text: str) -> list[Paragraph]:
    paragraphs: list[Paragraph] = []
    sentence_index = 0

    for part in _SPEAKER_BREAK.split(text):
        trimmed = part.strip()
        if not trimmed:
            continue

        speaker: SpeakerType = "text"
        content = trimmed
        for candidate, label in _SPEAKER_LABELS.items():
            if trimmed.startswith(label):
                speaker = candidate
                content = trimmed[len(label):].strip()
                break

        pieces = _GLUED_PERIOD.split(content)
        for i, piece in enumerate(pieces):
            paragraph_text = piece.strip()
            # split() consumed the period
            if i < len(pieces) - 1:
                paragraph_text += "."
            if not paragraph_text:
                continue

            sentences = split_into_sentences(paragraph_text)
            start = sentence_index + 1
            sentence_index += len(sentences)
            paragraphs.append(
                Paragraph(
                    type=speaker,
                    content=paragraph_text,
                    sentence_start=start,
                    sentence_end=sentence_index,
                )
            )

    return paragraphs


def filter_paragraphs_by_range(
    paragraphs: list[Paragraph], sentence_start: int, sentence_end: int
) -> list[Paragraph]:
    return [
        p
        for p in paragraphs
        if p.sentence_end >= sentence_start and p.sentence_start <= sentence_end
    ]


def reconstruct_text(
    paragraphs: list[Paragraph], has_text_before: bool, has_text_after: bool
) -> str:
    parts: list[str] = []
    last_type: SpeakerType | None = None

    for i, para in enumerate(paragraphs):
        if para.type != last_type:
            label = _SPEAKER_LABELS.get(para.type)
            if label:
                parts.append(label)
            last_type = para.type

        parts.append(para.content)

        # a label already separates different speakers
        if i < len(paragraphs) - 1 and paragraphs[i + 1].type == para.type:
            parts.append("\n\n")

    text = " ".join(parts)
    prefix = "...\n\n" if has_text_before else ""
    suffix = "\n\n..." if has_text_after else ""
    return f"{prefix}{text}{suffix}"


def format_whole_quote(text: str) -> str:
    return reconstruct_text(parse_into_paragraphs(text), False, False)


def apply_sentence_range(text: str, sentence_start: int, sentence_end: int) -> str:
    """Keep only the paragraphs touching sentences ``start..end`` (inclusive).

    Returns ``text`` unchanged when the range selects nothing.
    """
    all_paragraphs = parse_into_paragraphs(text)
    selected = filter_paragraphs_by_range(all_paragraphs, sentence_start, sentence_end)
    if not selected:
        return text

    has_before = selected[0].sentence_start > 1
    has_after = selected[-1].sentence_end < all_paragraphs[-1].sentence_end
    return reconstruct_text(selected, has_before, has_after)
