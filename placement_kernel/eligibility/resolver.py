"""
Eligibility Resolver — evaluates an item's condition tree against a context.

Dispatch is a lookup table from condition type to rule, built once at
construction. With ``require_complete`` (the default) a registry that cannot
handle every condition variant is rejected up front, so a wiring defect
surfaces when the resolver is built rather than on the first unlucky item.
"""

from typing import Any, Dict, Iterable, Optional, Type

import structlog

from placement_kernel.eligibility.rules import Clock, Rule, create_standard_rules
from placement_kernel.errors import MalformedConditionError, ResolutionError
from placement_kernel.models.conditions import CONDITION_TYPES, AllOf, Condition, parse_condition
from placement_kernel.models.content import Item

logger = structlog.get_logger(__name__)

METADATA_ELIGIBILITY_KEY = "eligibility"


def extract_condition(metadata: Dict[str, Any]) -> Optional[Condition]:
    """
    Read a condition tree from payload metadata.

    ``metadata["eligibility"]`` may hold one condition object or a list of
    them (all must hold). Raises MalformedConditionError on bad data.
    """
    raw = metadata.get(METADATA_ELIGIBILITY_KEY)
    if raw is None:
        return None
    if isinstance(raw, list):
        return AllOf(conditions=[parse_condition(entry) for entry in raw])
    if isinstance(raw, dict):
        return parse_condition(raw)
    raise MalformedConditionError(
        f"Metadata key '{METADATA_ELIGIBILITY_KEY}' must be an object or a list, "
        f"got {type(raw).__name__}"
    )


class EligibilityResolver:
    """
    Holds the rule set and evaluates conditions.

    Stateless between calls: safe to share across engines.
    """

    def __init__(
        self,
        rules: Optional[Iterable[Rule]] = None,
        clock: Optional[Clock] = None,
        require_complete: bool = True,
    ):
        if rules is None:
            rules = create_standard_rules(self.evaluate, clock=clock)
        self._rules: Dict[Type[Any], Rule] = {}
        for rule in rules:
            self._rules[rule.condition_type] = rule

        if require_complete:
            missing = [t.__name__ for t in CONDITION_TYPES if t not in self._rules]
            if missing:
                raise ResolutionError(
                    ", ".join(missing),
                    f"Rule registry is incomplete; no rule for: {', '.join(missing)}",
                )

    def rule_for(self, condition: Any) -> Rule:
        rule = self._rules.get(type(condition))
        if rule is None:
            # Subclasses of a registered variant fall back to a supports() check
            rule = next((r for r in self._rules.values() if r.supports(condition)), None)
        if rule is None:
            raise ResolutionError(type(condition).__name__)
        return rule

    async def evaluate(self, condition: Condition, context: Dict[str, Any]) -> bool:
        """Evaluate one condition tree. ResolutionError always propagates."""
        return await self.rule_for(condition).evaluate(condition, context)

    def condition_for(self, item: Item) -> Optional[Condition]:
        if item.payload.eligibility is not None:
            return item.payload.eligibility
        return extract_condition(item.metadata)

    async def is_eligible(self, item: Item, context: Dict[str, Any]) -> bool:
        """An item without any condition is eligible."""
        condition = self.condition_for(item)
        if condition is None:
            return True
        eligible = await self.evaluate(condition, context)
        logger.debug("eligibility.resolved", item_id=item.id, eligible=eligible)
        return eligible

    async def ineligible_condition(
        self, item: Item, context: Dict[str, Any]
    ) -> Optional[Condition]:
        """
        The first top-level condition that fails, or None when eligible.

        A top-level AllOf is unpacked so callers learn which branch failed.
        """
        condition = self.condition_for(item)
        if condition is None:
            return None
        parts = condition.conditions if isinstance(condition, AllOf) else [condition]
        for part in parts:
            if not await self.evaluate(part, context):
                return part
        return None
