"""Post-call response quality heuristics.

These flags are signals for operators, not verdicts: the length ratio and
"specific fact" counts produce false positives on legitimately long answers
and miss fluent fabrications.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

POTENTIAL_HALLUCINATION = "potential_hallucination"
REPETITIVE_RESPONSE = "repetitive_response"
INCOMPLETE_RESPONSE = "incomplete_response"
INAPPROPRIATE_CONTENT = "inappropriate_content"

_HONEST_DISCLAIMERS = [
    re.compile(r"I don't have access to", re.I),
    re.compile(r"I cannot browse the internet", re.I),
    re.compile(r"As an AI, I don't have", re.I),
    re.compile(r"I'm not able to access", re.I),
]

_SUSPICIOUS_FACTS = [
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\$\d+\.\d{2}"),
    re.compile(r"\b\d{3}-\d{3}-\d{4}\b"),
]

_INCOMPLETE_MARKERS = [
    re.compile(r"\.\.\.$"),
    re.compile(r"\[incomplete\]", re.I),
    re.compile(r"\[truncated\]", re.I),
    re.compile(r"\[cut off\]", re.I),
]

# finish reasons meaning the provider stopped at the token limit
_TRUNCATED_FINISH_REASONS = {"length", "max_tokens", "MAX_TOKENS"}

_INAPPROPRIATE = [
    re.compile(r"\b(hate|racist|sexist|discriminatory)\b", re.I),
    re.compile(r"\b(violence|violent|kill|murder)\b", re.I),
    re.compile(r"\b(illegal|crime|criminal)\b", re.I),
]

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


@dataclass
class QualityThresholds:
    length_ratio: float = 5.0
    suspicious_fact_count: int = 3
    min_sentences_for_repetition: int = 3
    unique_sentence_ratio: float = 0.7


def check_hallucination(prompt: str, response: str, thresholds: QualityThresholds) -> bool:
    if any(p.search(response) for p in _HONEST_DISCLAIMERS):
        return False
    if len(response) > len(prompt) * thresholds.length_ratio:
        return True
    suspicious = sum(len(p.findall(response)) for p in _SUSPICIOUS_FACTS)
    return suspicious > thresholds.suspicious_fact_count


def check_repetition(response: str, thresholds: QualityThresholds) -> bool:
    sentences = [s.strip().lower() for s in _SENTENCE_SPLIT.split(response) if s.strip()]
    if len(sentences) <= thresholds.min_sentences_for_repetition:
        return False
    return len(set(sentences)) < len(sentences) * thresholds.unique_sentence_ratio


def check_incomplete(response: str, finish_reason: Optional[str] = None) -> bool:
    if finish_reason in _TRUNCATED_FINISH_REASONS:
        return True
    return any(p.search(response) for p in _INCOMPLETE_MARKERS)


def check_inappropriate(response: str) -> bool:
    return any(p.search(response) for p in _INAPPROPRIATE)


class QualityClassifier:
    def __init__(self, thresholds: Optional[QualityThresholds] = None) -> None:
        self.thresholds = thresholds or QualityThresholds()

    def classify(self, prompt: str, response: str, finish_reason: Optional[str] = None) -> List[str]:
        """Return the quality flags raised for a successful completion (empty when clean)."""
        prompt = prompt or ""
        response = response or ""
        flags: List[str] = []
        if check_hallucination(prompt, response, self.thresholds):
            flags.append(POTENTIAL_HALLUCINATION)
        if check_repetition(response, self.thresholds):
            flags.append(REPETITIVE_RESPONSE)
        if check_incomplete(response, finish_reason):
            flags.append(INCOMPLETE_RESPONSE)
        if check_inappropriate(response):
            flags.append(INAPPROPRIATE_CONTENT)
        return flags
