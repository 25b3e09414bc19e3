"""Token estimation without provider tokenizers.

Counts are word-based approximations scaled per provider. They are stable
and grow with text length, which is all cost accounting and policy checks
rely on; they are not expected to match a provider's own count.
"""
import math
import re
from typing import Any, Dict, Optional

TOKEN_MULTIPLIERS: Dict[str, float] = {
    "openai": 1.3,
    "anthropic": 1.2,
    "google": 1.1,
}
DEFAULT_MULTIPLIER = 1.25

_URL_RE = re.compile(r"https?://\S+")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_DECIMAL_RE = re.compile(r"\d+\.\d+")
_PUNCT_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]+")
_CONTRACTION_RE = re.compile(r"\b\w+'\w+\b")
_SPECIAL_CHAR_RE = re.compile(r"[^a-zA-Z0-9\s]")

# (max word length for 1 token, max word length for 2 tokens or None, chars per token, special chars per token)
_PROVIDER_BUCKETS = {
    "openai": (4, 8, 4, 4),
    "anthropic": (5, 10, 5, 5),
    "google": (6, None, 6, 8),
}


def multiplier_for(provider: Optional[str]) -> float:
    return TOKEN_MULTIPLIERS.get((provider or "").lower(), DEFAULT_MULTIPLIER)


def _words(text: str):
    return text.split()


def estimate_tokens(text: Optional[str], provider: Optional[str] = None) -> int:
    """Word count scaled by the provider multiplier, rounded up."""
    if not text or not isinstance(text, str):
        return 0
    return math.ceil(len(_words(text)) * multiplier_for(provider))


def estimate_tokens_detailed(text: Optional[str], provider: Optional[str] = None) -> int:
    """Estimate that weighs URLs, emails, numbers, punctuation and long words differently."""
    if not text or not isinstance(text, str):
        return 0
    count = 0
    for word in _words(text):
        if _URL_RE.search(word) or _EMAIL_RE.search(word) or _DECIMAL_RE.search(word):
            count += 1
        elif _PUNCT_RE.search(word):
            count += math.ceil(len(word) / 2)
        elif _CONTRACTION_RE.search(word):
            count += 2
        elif len(word) > 8:
            count += math.ceil(len(word) / 4)
        else:
            count += 1
    return math.ceil(count * multiplier_for(provider))


def estimate_tokens_provider_specific(text: Optional[str], provider: Optional[str] = None) -> int:
    if not text or not isinstance(text, str):
        return 0
    buckets = _PROVIDER_BUCKETS.get((provider or "").lower())
    if buckets is None:
        return estimate_tokens(text, provider)
    one, two, chars_per_token, special_per_token = buckets

    count = 0
    for word in _words(text):
        n = len(word)
        if n <= one:
            count += 1
        elif two is not None and n <= two:
            count += 2
        else:
            count += math.ceil(n / chars_per_token)
    specials = len(_SPECIAL_CHAR_RE.findall(text))
    return count + math.ceil(specials / special_per_token)


def count_request_tokens(prompt: Optional[str], response: Optional[str], provider: Optional[str] = None) -> Dict[str, int]:
    input_tokens = estimate_tokens(prompt, provider)
    output_tokens = estimate_tokens(response, provider) if response else 0
    return {
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
    }


def compute_cost(input_tokens: int, output_tokens: int, cost_per_input_token: float, cost_per_output_token: float) -> float:
    return input_tokens * cost_per_input_token + output_tokens * cost_per_output_token


def estimate_accuracy(estimated: int, actual: int) -> float:
    """1.0 is a perfect estimate; 0 or below means off by the full actual count or more."""
    if not actual:
        return 1.0
    return 1 - abs(estimated - actual) / actual


def token_stats(text: Optional[str], provider: Optional[str] = None) -> Dict[str, Any]:
    text = text or ""
    specific = estimate_tokens_provider_specific(text, provider)
    return {
        "basic": estimate_tokens(text, provider),
        "advanced": estimate_tokens_detailed(text, provider),
        "provider_specific": specific,
        "recommended": specific,
        "text_length": len(text),
        "word_count": len(_words(text)),
        "provider": provider or "default",
    }
