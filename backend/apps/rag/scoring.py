"""
Heuristic answer confidence.

The score is built from surface features of the generated text (citations,
code blocks, length, markdown structure) and is capped when the answer
admits the documentation does not cover the question.

This is NOT a calibrated probability. The weights have never been fitted
against ground truth and a higher score does not reliably mean a more
correct answer. Treat it as a display hint.
"""
import re
from dataclasses import dataclass
from typing import Tuple

SOURCE_CITATION = re.compile(r'\[Source \d+\]')
FENCED_CODE_BLOCK = re.compile(r'```[\s\S]*?```')
LIST_ITEM = re.compile(r'^\s*[-*•]\s', re.MULTILINE)
HEADING = re.compile(r'^#+\s', re.MULTILINE)

NO_INFORMATION_PHRASES: Tuple[str, ...] = (
    "not available in the current",
    "don't have information",
    "don't have this information",
    "not found in the documentation",
)


@dataclass(frozen=True)
class ScoringWeights:
    """Tunable constants of the confidence heuristic."""
    baseline: float = 0.5
    citation_bonus: float = 0.15
    code_block_bonus: float = 0.10
    long_answer_bonus: float = 0.10
    medium_answer_bonus: float = 0.05
    structure_bonus: float = 0.05
    long_answer_chars: int = 500
    medium_answer_chars: int = 200
    no_information_cap: float = 0.3
    ceiling: float = 0.98


class ResponseScorer:
    """Deterministic, side-effect-free answer scoring."""

    def __init__(self, weights: ScoringWeights = ScoringWeights()):
        self.weights = weights

    def score(self, answer: str) -> float:
        """
        Score an answer in [0, ceiling], rounded to two decimals.

        Each signal counts at most once.
        """
        w = self.weights
        text = answer.strip()
        confidence = w.baseline

        if SOURCE_CITATION.search(text):
            confidence += w.citation_bonus

        if FENCED_CODE_BLOCK.search(text):
            confidence += w.code_block_bonus

        if len(text) > w.long_answer_chars:
            confidence += w.long_answer_bonus
        elif len(text) > w.medium_answer_chars:
            confidence += w.medium_answer_bonus

        if LIST_ITEM.search(text) or HEADING.search(text):
            confidence += w.structure_bonus

        lowered = text.lower().replace("’", "'")
        if any(phrase in lowered for phrase in NO_INFORMATION_PHRASES):
            confidence = min(confidence, w.no_information_cap)

        confidence = max(0.0, min(confidence, w.ceiling))
        return round(confidence, 2)
