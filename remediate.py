#!/usr/bin/env python3
"""
Remediate Tool - AI-driven Kubernetes issue investigation

Runs a bounded investigation loop:
- Ask the AI backend (behind a circuit breaker) what to look at next
- Execute only read-only kubectl queries it requests
- Record every cycle in the session file
- Stop when the AI calls complete_investigation or after MAX_ITERATIONS

Key Rule: nothing the AI says reaches the cluster without passing the
SAFE_OPERATIONS check, and the loop never runs a mutating command.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ai_provider import AIProvider, create_ai_provider
from circuit_breaker import CircuitBreakerFactory, CircuitOpenError
from config import AI_BACKEND_BREAKER, RuntimeConfig
from errors import InvestigationError, RemediateError, ValidationError
from kubectl import SAFE_OPERATIONS, KubectlQueryExecutor, query_command, suggest_fix
from sessions import (
    DataRequest, InvestigationIteration, RemediateSession, SessionStatus, SessionStore,
    resolve_session_directory, validate_session_directory
)
from tool_calls import extract_tool_calls, format_tool_definitions, strip_tool_blocks


logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

REMEDIATE_TOOL_NAME = "remediate"
REMEDIATE_TOOL_DESCRIPTION = (
    "AI-powered Kubernetes issue analysis that provides root cause identification "
    "and actionable remediation steps. Performs a multi-step, read-only investigation "
    "of the cluster, correlates what it finds and proposes a fix. Use when users want "
    "to understand WHY something is broken: failing pods, networking or storage "
    "problems, performance issues, or any \"what's wrong\" question."
)

MAX_ITERATIONS = 20
MAX_ISSUE_LENGTH = 2000
MODES = ("manual", "automatic")
RISK_LEVELS = {"low": 1, "medium": 2, "high": 3}
DEFAULT_CONFIDENCE_THRESHOLD = 0.8
DEFAULT_MAX_RISK_LEVEL = "low"

DATA_REQUEST_TOOL = "kubectl_query"
COMPLETION_TOOL = "complete_investigation"
EARLY_TERMINATION_TOOL = "request_more_specific_issue"

MORE_SPECIFIC_ISSUE_MESSAGE = (
    "Unable to find relevant resources for the reported issue. Please be more specific "
    "about which resource type or component is having problems (e.g., \"my "
    "sqls.devopstoolkit.live resource named test-db\" instead of \"my database\")."
)

REMEDIATE_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "issue": {
            "type": "string",
            "minLength": 1,
            "maxLength": MAX_ISSUE_LENGTH,
            "description": "Issue description that needs to be analyzed and remediated"
        },
        "context": {
            "type": "object",
            "description": "Optional initial context to help with analysis",
            "properties": {
                "event": {"description": "Kubernetes event object"},
                "logs": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Relevant log entries"
                },
                "metrics": {"description": "Relevant metrics data"},
                "podSpec": {"description": "Pod specification if relevant"},
                "relatedEvents": {
                    "type": "array",
                    "description": "Related Kubernetes events"
                }
            }
        },
        "mode": {
            "type": "string",
            "enum": list(MODES),
            "default": "manual",
            "description": "manual returns recommendations only, automatic may execute approved remediations"
        },
        "policy": {
            "type": "string",
            "description": "Organizational policy the remediation must respect"
        },
        "confidenceThreshold": {
            "type": "number",
            "minimum": 0,
            "maximum": 1,
            "default": DEFAULT_CONFIDENCE_THRESHOLD,
            "description": "Automatic execution only if confidence is at or above this value"
        },
        "maxRiskLevel": {
            "type": "string",
            "enum": list(RISK_LEVELS),
            "default": DEFAULT_MAX_RISK_LEVEL,
            "description": "Automatic execution only if risk is at or below this level"
        },
        "sessionDir": {
            "type": "string",
            "description": "Session directory (defaults to REMEDIATE_SESSION_DIR)"
        }
    },
    "required": ["issue"]
}

INVESTIGATION_TOOLS = [
    {
        "name": DATA_REQUEST_TOOL,
        "description": (
            "Run one read-only kubectl query. type must be one of: "
            + ", ".join(SAFE_OPERATIONS) + "."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "type": {"type": "string", "enum": list(SAFE_OPERATIONS)},
                "resource": {"type": "string", "description": "e.g. pods, pod/api-7d9f, deployment/web"},
                "namespace": {"type": "string"},
                "rationale": {"type": "string", "description": "Why this data is needed"}
            },
            "required": ["type", "resource", "rationale"]
        }
    },
    {
        "name": COMPLETION_TOOL,
        "description": "Finish the investigation with the root cause and remediation plan.",
        "input_schema": {
            "type": "object",
            "properties": {
                "rootCause": {"type": "string"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "factors": {"type": "array", "items": {"type": "string"}},
                "remediation": {
                    "type": "object",
                    "properties": {
                        "summary": {"type": "string"},
                        "actions": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "description": {"type": "string"},
                                    "command": {"type": "string"},
                                    "risk": {"type": "string", "enum": list(RISK_LEVELS)},
                                    "rationale": {"type": "string"}
                                },
                                "required": ["description", "risk", "rationale"]
                            }
                        },
                        "risk": {"type": "string", "enum": list(RISK_LEVELS)}
                    },
                    "required": ["summary", "actions", "risk"]
                },
                "validationIntent": {"type": "string"}
            },
            "required": ["rootCause", "confidence", "factors", "remediation"]
        }
    },
    {
        "name": EARLY_TERMINATION_TOOL,
        "description": (
            "Stop the investigation because nothing in the cluster matches the issue. "
            "Use only when no resource related to the report can be found."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "What was searched for and not found"}
            },
            "required": ["reason"]
        }
    }
]


# ============================================================================
# PROMPT
# ============================================================================

INVESTIGATION_TEMPLATE = """
You are a Kubernetes troubleshooting expert investigating an issue on a live cluster.
Iteration {current_iteration} of {max_iterations}.

# ISSUE
{issue}

# INITIAL CONTEXT
{initial_context}
{policy_section}
# CLUSTER API RESOURCES
{api_resources}

# PREVIOUS ITERATIONS
{previous_iterations}

# TOOLS
{tool_definitions}

# INSTRUCTIONS
1. Explain what you know so far and what is still uncertain.
2. To gather more data, emit one or more ```json blocks, each holding
   {{"tool": "{data_request_tool}", "arguments": {{...}}}}. Only read-only
   queries are executed; anything else is refused.
3. When you are confident about the root cause, emit exactly one ```json block
   {{"tool": "{completion_tool}", "arguments": {{...}}}} instead of data requests.
4. Remediation commands must be specific kubectl commands with a risk level.
5. If no resource related to the issue exists in the cluster, emit one ```json block
   {{"tool": "{early_termination_tool}", "arguments": {{"reason": "..."}}}} instead
   of guessing.
"""


def build_investigation_prompt(
    session: RemediateSession,
    api_resources: str,
    max_iterations: int = MAX_ITERATIONS
) -> str:
    """Prompt for the next iteration from the session history."""
    policy_section = ""
    if session.policy:
        policy_section = f"""
# ORGANIZATIONAL POLICY (remediation must comply)
{session.policy}
"""

    previous = [
        {
            "step": it.step,
            "analysis": strip_tool_blocks(it.ai_analysis),
            "dataRequests": [r.to_dict() for r in it.data_requests],
            "gatheredData": it.gathered_data
        }
        for it in session.iterations
    ]

    return INVESTIGATION_TEMPLATE.format(
        current_iteration=len(session.iterations) + 1,
        max_iterations=max_iterations,
        issue=session.issue,
        initial_context=json.dumps(session.initial_context, indent=2, default=str),
        policy_section=policy_section,
        api_resources=api_resources,
        previous_iterations=json.dumps(previous, indent=2, default=str) if previous else "[None - first iteration]",
        tool_definitions=format_tool_definitions(INVESTIGATION_TOOLS),
        data_request_tool=DATA_REQUEST_TOOL,
        completion_tool=COMPLETION_TOOL,
        early_termination_tool=EARLY_TERMINATION_TOOL
    )


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class RemediateInput:
    """Validated remediate tool arguments."""
    issue: str
    context: Dict[str, Any] = field(default_factory=dict)
    mode: str = "manual"
    policy: Optional[str] = None
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    max_risk_level: str = DEFAULT_MAX_RISK_LEVEL


@dataclass
class RemediationAction:
    """One recommended remediation step."""
    description: str
    risk: str
    rationale: str
    command: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "description": self.description,
            "risk": self.risk,
            "rationale": self.rationale
        }
        if self.command:
            data["command"] = self.command
        return data


@dataclass
class FinalAnalysis:
    """Payload of a complete_investigation call."""
    root_cause: str
    confidence: float
    factors: List[str]
    summary: str
    actions: List[RemediationAction]
    risk: str
    validation_intent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootCause": self.root_cause,
            "confidence": self.confidence,
            "factors": self.factors,
            "remediation": {
                "summary": self.summary,
                "actions": [a.to_dict() for a in self.actions],
                "risk": self.risk
            },
            "validationIntent": self.validation_intent
        }


@dataclass
class InvestigationResponse:
    """What one AI reply asked for."""
    analysis: str
    data_requests: List[DataRequest] = field(default_factory=list)
    final_analysis: Optional[FinalAnalysis] = None
    anomalies: Dict[str, Any] = field(default_factory=dict)
    needs_more_specific_info: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.final_analysis is not None


@dataclass
class ExecutionDecision:
    """Whether remediation actions may run, and the resulting status."""
    should_execute: bool
    reason: str
    status: str
    fallback_reason: Optional[str] = None


@dataclass
class RemediateOutput:
    """Result returned by the remediate tool."""
    status: str
    session_id: str
    iterations: int
    data_gathered: List[str]
    analysis_path: List[str]
    termination_reason: str
    root_cause: str
    confidence: float
    factors: List[str]
    remediation_summary: str
    actions: List[RemediationAction]
    risk: str
    instructions: Dict[str, Any] = field(default_factory=dict)
    executed: bool = False
    execution_choices: Optional[List[Dict[str, Any]]] = None
    fallback_reason: Optional[str] = None
    results: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "sessionId": self.session_id,
            "investigation": {
                "iterations": self.iterations,
                "dataGathered": self.data_gathered,
                "analysisPath": self.analysis_path,
                "terminationReason": self.termination_reason
            },
            "analysis": {
                "rootCause": self.root_cause,
                "confidence": self.confidence,
                "factors": self.factors
            },
            "remediation": {
                "summary": self.remediation_summary,
                "actions": [a.to_dict() for a in self.actions],
                "risk": self.risk
            },
            "instructions": self.instructions,
            "executed": self.executed
        }
        if self.execution_choices is not None:
            data["executionChoices"] = self.execution_choices
        if self.fallback_reason:
            data["fallbackReason"] = self.fallback_reason
        if self.results is not None:
            data["results"] = self.results
        return data


# Executes approved remediation actions; returns one result dict per action
RemediationExecutor = Callable[[List[RemediationAction]], Awaitable[List[Dict[str, Any]]]]


# ============================================================================
# INPUT VALIDATION
# ============================================================================

def validate_remediate_input(args: Dict[str, Any]) -> RemediateInput:
    """Validate tool arguments; raises ValidationError before any session exists."""

    def invalid(message: str) -> ValidationError:
        return ValidationError(
            f"Invalid input: {message}",
            operation="input_validation",
            component="RemediateTool",
            suggested_actions=[
                "Check that issue is a non-empty string",
                "Verify mode is either \"manual\" or \"automatic\"",
                "Ensure context follows expected structure if provided"
            ]
        )

    if not isinstance(args, dict):
        raise invalid("arguments must be an object")

    issue = args.get("issue")
    if not isinstance(issue, str) or not issue.strip():
        raise invalid("issue must be a non-empty string")
    issue = issue.strip()
    if len(issue) > MAX_ISSUE_LENGTH:
        raise invalid(f"issue must be at most {MAX_ISSUE_LENGTH} characters")

    context = args.get("context") or {}
    if not isinstance(context, dict):
        raise invalid("context must be an object")
    logs = context.get("logs")
    if logs is not None and (not isinstance(logs, list) or not all(isinstance(l, str) for l in logs)):
        raise invalid("context.logs must be a list of strings")
    related = context.get("relatedEvents")
    if related is not None and not isinstance(related, list):
        raise invalid("context.relatedEvents must be a list")

    mode = args.get("mode") or "manual"
    if mode not in MODES:
        raise invalid(f"mode must be one of {', '.join(MODES)}, got {mode!r}")

    policy = args.get("policy")
    if policy is not None and not isinstance(policy, str):
        raise invalid("policy must be a string")

    threshold = args.get("confidenceThreshold", DEFAULT_CONFIDENCE_THRESHOLD)
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or not 0 <= threshold <= 1:
        raise invalid("confidenceThreshold must be a number between 0 and 1")

    max_risk = args.get("maxRiskLevel") or DEFAULT_MAX_RISK_LEVEL
    if max_risk not in RISK_LEVELS:
        raise invalid(f"maxRiskLevel must be one of {', '.join(RISK_LEVELS)}")

    return RemediateInput(
        issue=issue,
        context=context,
        mode=mode,
        policy=policy or None,
        confidence_threshold=float(threshold),
        max_risk_level=max_risk
    )


# ============================================================================
# AI RESPONSE PARSING
# ============================================================================

def _require_text(data: Dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{where}.{key} must be a non-empty string")
    return value


def _require_risk(value: Any, where: str) -> str:
    if value not in RISK_LEVELS:
        raise ValueError(f"Invalid risk level in {where}: {value!r}")
    return value


def parse_final_analysis(arguments: Dict[str, Any]) -> FinalAnalysis:
    """Strictly validate a complete_investigation payload."""
    root_cause = _require_text(arguments, "rootCause", COMPLETION_TOOL)

    confidence = arguments.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError("confidence must be a number")
    if not 0 <= confidence <= 1:
        raise ValueError(f"Invalid confidence value: {confidence}. Must be between 0 and 1")

    factors = arguments.get("factors")
    if not isinstance(factors, list) or not all(isinstance(f, str) for f in factors):
        raise ValueError("factors must be a list of strings")

    remediation = arguments.get("remediation")
    if not isinstance(remediation, dict):
        raise ValueError("remediation must be an object")
    summary = _require_text(remediation, "summary", "remediation")
    overall_risk = _require_risk(remediation.get("risk"), "remediation")

    raw_actions = remediation.get("actions")
    if not isinstance(raw_actions, list):
        raise ValueError("remediation.actions must be a list")

    actions = []
    for i, raw in enumerate(raw_actions):
        where = f"remediation.actions[{i}]"
        if not isinstance(raw, dict):
            raise ValueError(f"{where} must be an object")
        command = raw.get("command")
        actions.append(RemediationAction(
            description=_require_text(raw, "description", where),
            risk=_require_risk(raw.get("risk"), where),
            rationale=_require_text(raw, "rationale", where),
            command=command if isinstance(command, str) and command else None
        ))

    validation_intent = arguments.get("validationIntent")

    return FinalAnalysis(
        root_cause=root_cause,
        confidence=float(confidence),
        factors=factors,
        summary=summary,
        actions=actions,
        risk=overall_risk,
        validation_intent=validation_intent if isinstance(validation_intent, str) else None
    )


def parse_investigation_response(text: str) -> InvestigationResponse:
    """
    Interpret one AI reply.

    Data requests are kubectl_query tool calls; completion is signalled only
    by a valid complete_investigation call. Anything else is recorded as an
    anomaly for the iteration instead of aborting the investigation.
    """
    response = InvestigationResponse(analysis=strip_tool_blocks(text))

    for index, call in enumerate(extract_tool_calls(text)):
        tool = call["tool"]
        arguments = call["arguments"]

        if tool == DATA_REQUEST_TOOL:
            query_type = arguments.get("type")
            if not isinstance(query_type, str) or not query_type:
                response.anomalies[f"invalid_data_request_{index}"] = {
                    "request": arguments,
                    "error": "Data request missing required field: type"
                }
                continue
            request = DataRequest.from_dict(arguments)
            if not request.rationale:
                response.anomalies[f"data_request_{index}_missing_rationale"] = {
                    "request": request.to_dict(),
                    "error": "Data request missing required field: rationale"
                }
            response.data_requests.append(request)

        elif tool == COMPLETION_TOOL:
            if response.final_analysis is not None:
                continue
            try:
                response.final_analysis = parse_final_analysis(arguments)
            except ValueError as e:
                response.anomalies[f"{COMPLETION_TOOL}_invalid"] = {"error": str(e)}

        elif tool == EARLY_TERMINATION_TOOL:
            reason = arguments.get("reason")
            if not isinstance(reason, str) or not reason.strip():
                response.anomalies[f"{EARLY_TERMINATION_TOOL}_invalid"] = {
                    "error": "reason must be a non-empty string"
                }
                continue
            response.needs_more_specific_info = reason.strip()

        else:
            response.anomalies[f"unknown_tool_{tool}"] = {
                "error": (
                    f"Unknown tool '{tool}'. Available: "
                    f"{DATA_REQUEST_TOOL}, {COMPLETION_TOOL}, {EARLY_TERMINATION_TOOL}"
                )
            }

    return response


# ============================================================================
# EXECUTION DECISION
# ============================================================================

def make_execution_decision(
    mode: str,
    confidence: float,
    risk: str,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    max_risk_level: str = DEFAULT_MAX_RISK_LEVEL
) -> ExecutionDecision:
    """Decide whether automatic remediation is allowed."""
    if mode == "manual":
        return ExecutionDecision(
            should_execute=False,
            reason="Manual mode selected - requiring user approval",
            status="success"
        )

    if confidence < confidence_threshold:
        return ExecutionDecision(
            should_execute=False,
            reason=f"Confidence {confidence:.2f} below threshold {confidence_threshold:.2f}",
            status="failed",
            fallback_reason=(
                f"Analysis confidence ({round(confidence * 100)}%) is below the required "
                f"threshold ({round(confidence_threshold * 100)}%). Manual review recommended."
            )
        )

    if RISK_LEVELS[risk] > RISK_LEVELS[max_risk_level]:
        return ExecutionDecision(
            should_execute=False,
            reason=f"Risk level {risk} exceeds maximum {max_risk_level}",
            status="failed",
            fallback_reason=(
                f"Remediation risk level ({risk}) exceeds the maximum allowed level "
                f"({max_risk_level}). Manual approval required."
            )
        )

    return ExecutionDecision(
        should_execute=True,
        reason=(
            f"Automatic execution approved - confidence {confidence:.2f} >= "
            f"{confidence_threshold:.2f}, risk {risk} <= {max_risk_level}"
        ),
        status="success"
    )


def build_instructions(final: FinalAnalysis) -> Dict[str, Any]:
    """Client-facing summary and next steps."""
    high = [a for a in final.actions if a.risk == "high"]
    medium = [a for a in final.actions if a.risk == "medium"]

    next_steps = [
        "1. Review the root cause analysis and confidence level",
        "2. Display each remediation action with its kubectl command, risk level, and rationale",
        "3. Execute remediation actions in the order provided",
        "4. Stop if any action fails and investigate the error",
    ]
    if final.validation_intent:
        next_steps += [
            f"5. After execution, run the remediate tool again with: '{final.validation_intent}'",
            "6. Verify the tool reports no issues or identifies any new problems",
        ]
    else:
        next_steps.append("5. Verify the solution resolved the original issue")

    risk_considerations = []
    if high:
        risk_considerations.append(
            f"{len(high)} HIGH RISK actions require careful review and may need user confirmation"
        )
    if medium:
        risk_considerations.append(
            f"{len(medium)} MEDIUM RISK actions should be executed with monitoring"
        )
    risk_considerations.append("Each action includes a detailed rationale for why it's recommended")

    return {
        "summary": (
            f"AI analysis identified the root cause with {round(final.confidence * 100)}% confidence. "
            f"{len(final.actions)} remediation actions are recommended."
        ),
        "nextSteps": next_steps,
        "riskConsiderations": risk_considerations
    }


def execution_choices(risk: str) -> List[Dict[str, Any]]:
    """Numbered choices offered to the user in manual mode."""
    return [
        {
            "id": 1,
            "label": "Execute automatically via MCP",
            "description": "Run the kubectl commands shown above automatically via MCP",
            "risk": risk
        },
        {
            "id": 2,
            "label": "Copy commands to run manually",
            "description": "I'll copy and run the kubectl commands shown above myself",
            "risk": risk
        },
        {
            "id": 3,
            "label": "Cancel this operation",
            "description": "Don't execute any remediation actions"
        }
    ]


# ============================================================================
# INVESTIGATION LOOP
# ============================================================================

class RemediationInvestigator:
    """
    Bounded gather-ask-decide loop for one remediation session.

    Collaborators:
        ai_provider: send_message(prompt) -> AIResponse, guarded by the
            breaker registered under breaker_name
        query_executor: execute_read_only_query(type, resource, namespace)
            and discover_api_resources()
        session_store: save_session(session)
    """

    def __init__(
        self,
        ai_provider: AIProvider,
        query_executor: Any,
        session_store: SessionStore,
        breaker_factory: CircuitBreakerFactory,
        max_iterations: int = MAX_ITERATIONS,
        breaker_name: str = AI_BACKEND_BREAKER
    ):
        self.ai_provider = ai_provider
        self.query_executor = query_executor
        self.session_store = session_store
        self.breaker = breaker_factory.get_or_create(breaker_name)
        self.max_iterations = max_iterations

    async def investigate(self, session: RemediateSession) -> RemediateOutput:
        """Run the loop to a terminal state and build the tool output."""
        logger.info(
            f"Starting AI investigation loop for {session.session_id} "
            f"({len(session.iterations)} prior iterations)"
        )

        api_resources = await self._discover_api_resources(session)
        step = len(session.iterations)
        final_analysis: Optional[FinalAnalysis] = None

        while step < self.max_iterations:
            step += 1
            logger.debug(f"Investigation {session.session_id}: iteration {step}/{self.max_iterations}")

            prompt = build_investigation_prompt(session, api_resources, self.max_iterations)
            content = await self._ask_ai(session, prompt, step)
            parsed = parse_investigation_response(content)

            if parsed.needs_more_specific_info is not None:
                self._end_early(session, parsed.needs_more_specific_info)

            requests: List[DataRequest] = []
            gathered: Dict[str, Any] = {}
            if parsed.complete:
                if parsed.data_requests:
                    logger.debug(
                        f"Ignoring {len(parsed.data_requests)} data requests sent with completion"
                    )
            else:
                requests = parsed.data_requests
                gathered = await self.gather_data(requests)
            gathered.update(parsed.anomalies)

            iteration = InvestigationIteration(
                step=step,
                ai_analysis=content,
                data_requests=requests,
                gathered_data=gathered,
                complete=parsed.complete
            )
            session.iterations.append(iteration)
            self.session_store.save_session(session)

            logger.debug(
                f"Iteration {step} recorded: {len(requests)} data requests, complete={parsed.complete}"
            )

            if parsed.complete:
                final_analysis = parsed.final_analysis
                logger.info(
                    f"Investigation {session.session_id} completed by AI decision after "
                    f"{step} iterations (confidence {final_analysis.confidence:.2f})"
                )
                break

        if final_analysis is not None:
            session.status = SessionStatus.ANALYSIS_COMPLETE
            termination_reason = "analysis_complete"
        else:
            logger.info(
                f"Investigation {session.session_id} reached the iteration limit ({self.max_iterations})"
            )
            final_analysis = self._best_effort_analysis(session)
            session.status = SessionStatus.MAX_ITERATIONS_REACHED
            termination_reason = "max_iterations_reached"

        session.final_analysis = final_analysis.to_dict()
        self.session_store.save_session(session)

        return self.build_output(session, final_analysis, termination_reason)

    async def _discover_api_resources(self, session: RemediateSession) -> str:
        try:
            return await self.query_executor.discover_api_resources()
        except Exception as e:
            logger.warning(f"API resource discovery failed for {session.session_id}: {e}")
            return "[Unavailable - query well-known resource kinds directly]"

    async def _ask_ai(self, session: RemediateSession, prompt: str, step: int) -> str:
        """One AI call through the breaker; any failure ends the session."""
        try:
            response = await self.breaker.execute(lambda: self.ai_provider.send_message(prompt))
        except CircuitOpenError as e:
            message = (
                f"Investigation failed at iteration {step}: AI backend unavailable, "
                f"circuit '{e.circuit_name}' is open. Retry after {math.ceil(e.remaining_cooldown_ms)}ms"
            )
            self._fail(session, message)
            raise InvestigationError(
                message,
                operation="investigation_loop",
                component="RemediateTool",
                session_id=session.session_id,
                suggested_actions=[f"Retry after {math.ceil(e.remaining_cooldown_ms)}ms"]
            ) from e
        except Exception as e:
            message = f"Investigation failed at iteration {step}: AI analysis failed: {e}"
            self._fail(session, message)
            raise InvestigationError(
                message,
                operation="investigation_loop",
                component="RemediateTool",
                session_id=session.session_id,
                suggested_actions=[
                    "Check ANTHROPIC_API_KEY is set correctly",
                    "Check network connectivity to the AI provider"
                ]
            ) from e

        logger.debug(f"Received AI analysis: {len(response.content)} chars")
        return response.content

    def _fail(self, session: RemediateSession, message: str) -> None:
        logger.error(f"Investigation {session.session_id} failed: {message}")
        session.status = SessionStatus.FAILED
        session.error = message
        self.session_store.save_session(session)

    def _end_early(self, session: RemediateSession, reason: str) -> None:
        """The AI found nothing matching the issue; stop without recording the reply."""
        logger.info(f"Investigation {session.session_id} ended early by AI: {reason}")
        self._fail(session, MORE_SPECIFIC_ISSUE_MESSAGE)
        raise ValidationError(
            MORE_SPECIFIC_ISSUE_MESSAGE,
            operation="investigation_early_termination",
            component="RemediateTool",
            session_id=session.session_id,
            suggested_actions=[
                f"AI reported: {reason}",
                "Name the resource type and resource name that is failing"
            ]
        )

    async def gather_data(self, requests: List[DataRequest]) -> Dict[str, Any]:
        """
        Execute read-only data requests.

        Requests outside SAFE_OPERATIONS are refused and recorded; query
        failures are recorded with a suggestion. Neither aborts the loop.
        """
        gathered: Dict[str, Any] = {}

        for request in requests:
            key = request.key
            suffix = 2
            while key in gathered:
                key = f"{request.key}_{suffix}"
                suffix += 1

            if request.type not in SAFE_OPERATIONS:
                logger.warning(
                    f"Rejected unsafe kubectl operation '{request.type}' on '{request.resource}'"
                )
                gathered[key] = {
                    "request": request.to_dict(),
                    "error": (
                        f"Unsafe operation '{request.type}' - only allowed: "
                        f"{', '.join(SAFE_OPERATIONS)}"
                    ),
                    "rejected": True
                }
                continue

            if not request.resource and request.type != "events":
                gathered[key] = {
                    "request": request.to_dict(),
                    "error": "Data request missing required field: resource"
                }
                continue

            command = query_command(request.type, request.resource, request.namespace)
            try:
                output = await self.query_executor.execute_read_only_query(
                    request.type, request.resource, request.namespace
                )
            except Exception as e:
                suggestion = getattr(e, "suggestion", None) or suggest_fix(str(e))
                logger.warning(f"kubectl query failed: {command}: {e}")
                gathered[key] = {
                    "request": request.to_dict(),
                    "command": command,
                    "error": str(e),
                    "suggestion": suggestion
                }
                continue

            gathered[key] = {
                "request": request.to_dict(),
                "command": command,
                "output": output,
                "timestamp": datetime.now().isoformat()
            }

        if requests:
            logger.info(f"Data gathering completed: {len(requests)} requests")
        return gathered

    def _best_effort_analysis(self, session: RemediateSession) -> FinalAnalysis:
        """Analysis from the last iteration when the AI never completed."""
        last = strip_tool_blocks(session.iterations[-1].ai_analysis) if session.iterations else ""
        return FinalAnalysis(
            root_cause=last or "Root cause not confirmed within the iteration limit",
            confidence=0.0,
            factors=[],
            summary=(
                f"Investigation reached the limit of {self.max_iterations} iterations "
                f"without a confirmed root cause. Review the gathered data."
            ),
            actions=[],
            risk="low"
        )

    def build_output(
        self,
        session: RemediateSession,
        final: FinalAnalysis,
        termination_reason: str
    ) -> RemediateOutput:
        data_gathered = [
            key
            for iteration in session.iterations
            for key in iteration.gathered_data
        ]
        analysis_path = []
        for iteration in session.iterations:
            first_line = strip_tool_blocks(iteration.ai_analysis).split("\n")[0].strip()
            analysis_path.append(f"Iteration {iteration.step}: {first_line or 'Analysis performed'}")

        return RemediateOutput(
            status="success",
            session_id=session.session_id,
            iterations=len(session.iterations),
            data_gathered=data_gathered,
            analysis_path=analysis_path,
            termination_reason=termination_reason,
            root_cause=final.root_cause,
            confidence=final.confidence,
            factors=final.factors,
            remediation_summary=final.summary,
            actions=final.actions,
            risk=final.risk,
            instructions=build_instructions(final)
        )


# ============================================================================
# TOOL HANDLER
# ============================================================================

async def handle_remediate_tool(
    args: Dict[str, Any],
    config: RuntimeConfig,
    breaker_factory: CircuitBreakerFactory,
    ai_provider: Optional[AIProvider] = None,
    query_executor: Any = None,
    remediation_executor: Optional[RemediationExecutor] = None
) -> Dict[str, Any]:
    """
    Validate input, run the investigation and apply the execution decision.

    Raises:
        ValidationError: bad input (no session is created), or the AI found
            nothing matching the issue (session marked failed)
        SessionStorageError: unusable session directory
        ConfigurationError: AI provider cannot be built
        InvestigationError: AI backend failed or its circuit is open
    """
    validated = validate_remediate_input(args)
    logger.info(f"Remediate tool invoked (mode={validated.mode})")

    session_dir = validate_session_directory(
        resolve_session_directory(args, config), require_write=True
    )
    store = SessionStore(session_dir)

    if ai_provider is None:
        ai_provider = create_ai_provider(config)
    if query_executor is None:
        query_executor = KubectlQueryExecutor(
            kubeconfig=config.kubeconfig,
            context=config.kube_context,
            timeout_seconds=config.kubectl_timeout_seconds
        )

    session = store.create_session(
        validated.issue,
        context=validated.context,
        mode=validated.mode,
        policy=validated.policy
    )

    investigator = RemediationInvestigator(
        ai_provider=ai_provider,
        query_executor=query_executor,
        session_store=store,
        breaker_factory=breaker_factory
    )
    output = await investigator.investigate(session)

    if output.termination_reason == "max_iterations_reached":
        decision = ExecutionDecision(
            should_execute=False,
            reason="Iteration limit reached without a confirmed root cause",
            status="success",
            fallback_reason=(
                "Investigation reached the iteration limit without a confirmed root cause. "
                "Manual review recommended."
            ) if validated.mode == "automatic" else None
        )
    else:
        decision = make_execution_decision(
            validated.mode,
            output.confidence,
            output.risk,
            validated.confidence_threshold,
            validated.max_risk_level
        )
    logger.info(f"Execution decision for {session.session_id}: {decision.reason}")

    output.status = decision.status
    output.fallback_reason = decision.fallback_reason

    if validated.mode == "manual":
        output.execution_choices = execution_choices(output.risk)
    elif decision.should_execute:
        if remediation_executor is None:
            output.fallback_reason = (
                "No remediation executor is configured; actions are returned for manual execution."
            )
        else:
            output.results = await remediation_executor(output.actions)
            output.executed = True
            if not all(r.get("success") for r in output.results):
                output.status = "failed"

    session.final_analysis = output.to_dict()
    store.save_session(session)

    return output.to_dict()


def error_response(error: RemediateError) -> Dict[str, Any]:
    """Structured failure payload for a tool caller."""
    return {
        "status": "failed",
        "sessionId": error.session_id,
        "error": error.to_dict()
    }
