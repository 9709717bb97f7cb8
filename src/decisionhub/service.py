"""Rule evaluation service.

Connects the rule store to the decision engine: fetch a rule version the
caller owns, evaluate it against input records, and record the annotated
results.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from decisionhub.core.context import EvaluationResult
from decisionhub.core.engine import DecisionEngine
from decisionhub.core.graph import RuleGraph
from decisionhub.store.rules import RuleStore

logger = logging.getLogger(__name__)


class DecisionService:
    """Evaluates stored rules.

    Attributes:
        store: Rule store supplying rule versions.
        engine: Engine evaluating them.
    """

    def __init__(self, store: RuleStore, engine: Optional[DecisionEngine] = None):
        self.store = store
        self.engine = engine or DecisionEngine()

    def run(
        self,
        rule_id: str,
        owner_id: str,
        record: Mapping[str, Any],
        version: Optional[str] = None,
        now: Optional[datetime] = None,
        persist: bool = True,
    ) -> EvaluationResult:
        """Evaluate one stored rule version against one record.

        Args:
            rule_id: Rule to evaluate.
            owner_id: Caller, who must own the rule.
            record: Input record.
            version: Version to evaluate; the head version when omitted.
            now: Evaluation clock.
            persist: Whether to record the annotated result in the store.

        Raises:
            KeyError: If the rule or version does not exist.
            RuleAccessError: If ``owner_id`` does not own the rule.
            MalformedGraphError: If the stored graph is malformed.
        """
        rule, _ = self.store.get_rule(rule_id, owner_id, version)
        result = self.engine.evaluate(RuleGraph.from_dict(rule.condition), record, now=now)

        if persist:
            self.store.save_evaluation(rule_id, rule.version, result)

        logger.info(
            "Evaluated stored rule",
            extra={
                "rule_id": rule_id,
                "version": rule.version,
                "decision_reached": result.decision_reached,
            },
        )
        return result

    async def run_batch(
        self,
        rule_id: str,
        owner_id: str,
        records: Iterable[Mapping[str, Any]],
        version: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[EvaluationResult]:
        """Evaluate one stored rule version against many records concurrently.

        Batch results are returned, not recorded.
        """
        rule, _ = self.store.get_rule(rule_id, owner_id, version)
        return await self.engine.evaluate_batch(RuleGraph.from_dict(rule.condition), records, now=now)
