"""
Branch Executor - Evaluates "decision" nodes.

Node config, either a list of conditions:

    {"conditions": [{"variable": "fetch_output.status", "operator": "equals", "value": 200}],
     "combine": "all"}

or a single condition inline:

    {"variable": "score", "operator": "greater_than", "value": 0.8}

Optional ``true_value`` / ``false_value`` are returned as ``value`` for the
chosen side. The result names the port ("true" or "false") so downstream
executors can check which side was taken via ``<node_id>_output.port``.
"""

import logging
from typing import Any

from pydantic import ValidationError

from flowforge.errors import ConditionEvaluationError
from flowforge.graph.conditions import ConditionGroup, evaluate_conditions
from flowforge.graph.node import NodeSpec
from flowforge.runtime.context import ExecutionContext

logger = logging.getLogger(__name__)


class BranchExecutor:
    """Evaluates a node's conditions with the closed operator set."""

    def parse_conditions(self, config: dict[str, Any]) -> ConditionGroup:
        if "conditions" in config:
            data = {"conditions": config["conditions"], "combine": config.get("combine", "all")}
        elif "variable" in config:
            single = {k: config[k] for k in ("variable", "operator", "value") if k in config}
            data = {"conditions": [single]}
        else:
            data = {"conditions": []}

        try:
            return ConditionGroup.model_validate(data)
        except ValidationError as e:
            raise ConditionEvaluationError(str(e)) from e

    async def execute(self, node: NodeSpec, context: ExecutionContext) -> dict[str, Any]:
        group = self.parse_conditions(node.config)
        result = evaluate_conditions(group, context.variables)
        port = "true" if result else "false"
        logger.info(f"   ⑂ {node.display_name} -> {port}")

        output: dict[str, Any] = {"result": result, "port": port}
        value_key = f"{port}_value"
        if value_key in node.config:
            output["value"] = node.config[value_key]
        return output
