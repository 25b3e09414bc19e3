from .engine import PolicyContext, PolicyDecision, PolicyEngine
from .quality import QualityClassifier, QualityThresholds

__all__ = [
    "PolicyContext",
    "PolicyDecision",
    "PolicyEngine",
    "QualityClassifier",
    "QualityThresholds",
]
