"""Scored routing of free-text requests onto governed operations.

``IntentRouter.select`` is the pure decision: infer the environment and
intent, score every route, and either pick a winner or explain why not.
``IntentRouter.route`` runs the winner through the policy enforcer.

Score for a route::

    base_score
      + 5 if the inferred intent is one of the route's intents
      + 3 if the route is the caller's preferred operation
      + 2 per route keyword found in the prompt
      + 1 per required argument present, -1 per required argument missing

With mutations disabled, mutating and schema-changing routes are dropped.
The highest score wins; ties keep registration order. A winning score of
zero or less is no match.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from sqlgate.governance.enforcer import PolicyEnforcer
from sqlgate.registry import EnvironmentRegistry
from sqlgate.routing.intents import Intent, contains_phrase, infer_environment, infer_intent
from sqlgate.tools.base import Operation
from sqlgate.utils.errors import ErrorCode, failure

logger = logging.getLogger(__name__)

INTENT_WEIGHT = 5
PREFERRED_WEIGHT = 3
KEYWORD_WEIGHT = 2
ARGUMENT_WEIGHT = 1


class RouteRequest(BaseModel):
    """A free-text request plus optional structured arguments."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    prompt: str = Field(
        default="",
        description="What you want to do, e.g. 'show tables in prod' or 'count orders from last week'",
    )
    tool_arguments: dict[str, Any] = Field(
        default_factory=dict,
        description="Arguments for the selected operation (query, table_name, data, updates, where_clause, ...)",
        validation_alias=AliasChoices("tool_arguments", "toolArguments"),
    )
    confirm_intent: bool = Field(
        default=False,
        description="Set to true to run an operation that modifies data or schema",
        validation_alias=AliasChoices("confirm_intent", "confirmIntent"),
    )
    preferred_operation_name: Optional[str] = Field(
        default=None,
        description="Operation to favour when several match",
        validation_alias=AliasChoices(
            "preferred_operation_name", "preferredOperationName", "preferred_tool_name"
        ),
    )
    environment: Optional[str] = Field(
        default=None, description="Target environment; inferred from the prompt if omitted"
    )


@dataclass(frozen=True)
class OperationRoute:
    """Routing metadata for one operation."""

    operation: Operation
    intents: tuple[Intent, ...]
    keywords: tuple[str, ...] = ()
    required_args: tuple[str, ...] = ()
    base_score: float = 0.5
    requires_confirmation: bool = False

    @property
    def name(self) -> str:
        return self.operation.name

    @property
    def mutates(self) -> bool:
        caps = self.operation.capabilities
        return caps.mutates or caps.schema_change


@dataclass
class RoutingCandidate:
    route: OperationRoute
    score: float
    reasons: list[str] = field(default_factory=list)


@dataclass
class RoutingDecision:
    """Outcome of ``IntentRouter.select``.

    ``rejection`` is set when the request must not execute; otherwise
    ``candidate`` is the winning route.
    """

    arguments: dict[str, Any]
    environment: Optional[str] = None
    intent: Optional[Intent] = None
    candidates: list[RoutingCandidate] = field(default_factory=list)
    candidate: Optional[RoutingCandidate] = None
    rejection: Optional[dict[str, Any]] = None


def has_argument(arguments: dict[str, Any], key: str) -> bool:
    value = arguments.get(key)
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


class IntentRouter:
    def __init__(
        self,
        registry: EnvironmentRegistry,
        enforcer: PolicyEnforcer,
        routes: list[OperationRoute],
        allow_mutations: bool = True,
        require_confirmation: bool = True,
    ):
        self.registry = registry
        self.enforcer = enforcer
        self.routes = list(routes)
        self.allow_mutations = allow_mutations
        self.require_confirmation = require_confirmation

    def score(
        self,
        route: OperationRoute,
        prompt: str,
        arguments: dict[str, Any],
        intent: Intent,
        preferred: Optional[str] = None,
    ) -> RoutingCandidate:
        score = route.base_score
        reasons: list[str] = []

        if intent in route.intents:
            score += INTENT_WEIGHT
            reasons.append(f"intent match ({intent.value})")
        if preferred and route.name == preferred:
            score += PREFERRED_WEIGHT
            reasons.append("preferred operation")
        for keyword in route.keywords:
            if contains_phrase(prompt, keyword):
                score += KEYWORD_WEIGHT
                reasons.append(f"keyword '{keyword}'")
        for arg in route.required_args:
            score += ARGUMENT_WEIGHT if has_argument(arguments, arg) else -ARGUMENT_WEIGHT

        if route.mutates and not self.allow_mutations:
            score = float("-inf")
        return RoutingCandidate(route, score, reasons)

    def select(self, request: RouteRequest) -> RoutingDecision:
        """Decide what a request would run, without running it."""
        prompt = request.prompt.strip()
        arguments = {k: v for k, v in request.tool_arguments.items() if v is not None}
        decision = RoutingDecision(arguments=arguments)

        if not prompt:
            decision.rejection = failure(
                ErrorCode.MISSING_PROMPT,
                "Prompt is required to route intent.",
                "Describe what you want to do, e.g. 'list tables in staging'.",
            )
            return decision

        environment = request.environment or infer_environment(
            prompt, (env.name for env in self.registry.list_environments())
        )
        if environment:
            arguments["environment"] = environment
        decision.environment = environment

        intent = infer_intent(prompt, arguments)
        decision.intent = intent

        candidates = [
            self.score(route, prompt, arguments, intent, request.preferred_operation_name)
            for route in self.routes
        ]
        # sorted() is stable, so ties keep registration order
        candidates = sorted(
            (c for c in candidates if c.score != float("-inf")),
            key=lambda c: c.score,
            reverse=True,
        )
        decision.candidates = candidates

        if not candidates or candidates[0].score <= 0:
            decision.rejection = failure(
                ErrorCode.NO_TOOL_MATCH,
                "Unable to determine an appropriate operation for the provided prompt.",
                "Be more specific about the action, e.g. 'list tables', "
                "'describe table X' or 'run SELECT ...'.",
            )
            return decision

        best = candidates[0]
        decision.candidate = best

        missing = [a for a in best.route.required_args if not has_argument(arguments, a)]
        if missing:
            decision.rejection = failure(
                ErrorCode.MISSING_ARGUMENTS,
                f"Selected operation '{best.route.name}' requires argument(s): "
                f"{', '.join(missing)}.",
                "Provide them in tool_arguments and try again.",
                routed_tool=best.route.name,
                missing_arguments=missing,
            )
            return decision

        needs_confirmation = (
            best.route.requires_confirmation or best.route.mutates
        ) and self.require_confirmation
        if needs_confirmation and not request.confirm_intent:
            decision.rejection = failure(
                ErrorCode.CONFIRMATION_REQUIRED,
                f"Operation '{best.route.name}' modifies data or schema.",
                "Re-run with confirm_intent: true to proceed.",
                routed_tool=best.route.name,
                selected_environment=environment,
            )
        return decision

    async def route(self, request: RouteRequest) -> dict[str, Any]:
        decision = self.select(request)
        if decision.rejection is not None:
            return decision.rejection

        best = decision.candidate
        logger.info(
            f"Routing to '{best.route.name}' (score {best.score}, "
            f"intent {decision.intent.value}, environment {decision.environment})"
        )
        try:
            result = await self.enforcer.invoke(best.route.operation, decision.arguments)
        except Exception as e:
            logger.exception(f"Routed operation '{best.route.name}' failed")
            return failure(
                ErrorCode.ROUTED_TOOL_FAILED,
                f"Routed operation '{best.route.name}' failed: {e}",
                "Run the operation directly to see the full error.",
                routed_tool=best.route.name,
                selected_environment=decision.environment,
            )

        return {
            "success": bool(isinstance(result, dict) and result.get("success")),
            "routed_tool": best.route.name,
            "intent": decision.intent.value,
            "reasoning": best.reasons,
            "tool_result": result,
            "selected_environment": decision.environment,
        }
