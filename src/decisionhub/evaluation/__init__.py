"""
Evaluation module for decisionhub.

This module provides expression, condition block and quantifier evaluation
for branch nodes, and the temporal special functions.
"""

from decisionhub.evaluation.evaluator import Aggregation, ExpressionEvaluator, Fallback
from decisionhub.evaluation.temporal import TemporalResolver

__all__ = ["ExpressionEvaluator", "Aggregation", "Fallback", "TemporalResolver"]
