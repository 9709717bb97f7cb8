"""Rule storage for decisionhub."""

from decisionhub.store.rules import RuleAccessError, RuleRecord, RuleStore

__all__ = ["RuleStore", "RuleRecord", "RuleAccessError"]
