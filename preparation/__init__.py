"""
Preparation — the bounded pre-reply loop that runs guideline and transition tools.
"""
from preparation.engine import PreparationEngine, PreparationResult

__all__ = ["PreparationEngine", "PreparationResult"]
