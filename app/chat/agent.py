# app/chat/agent.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.chat.context import ConversationContext
from app.chat.operations import ToolRegistry, build_registry, dispatch
from app.chat.schema import HealthAssistantResponse
from app.chat.stages import ConversationPhase
from app.config import get_settings
from app.llm.client import LLMClient

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a helpful healthcare assistant that keeps a structured record of the user's symptoms while you talk with them.

You change the record ONLY by calling the available functions. Never describe an action instead of calling it.

Workflow for every user message:
1. Symptoms: when the user reports a symptom, call create_episode(name=...). If it returns an existing episode, use update_episode with that id instead. Whenever you learn severity, location, frequency, triggers, relievers or a pattern, call update_episode.
2. Denials: when the user says they do NOT have a symptom, call record_negative_finding.
3. Resolution: when a symptom is gone, call resolve_episode.
4. Assessments: when the user asks for an assessment, diagnosis or evaluation, or you have enough information, call create_assessment(hypothesis=..., confidence=..., recommended_action=...). Then call complete_assessment immediately.
5. Finish: call submit_final_response exactly once as your LAST action, with a non-empty message for the user explaining what you recorded and what they should do next.

Conversation phases:
- gathering: collecting symptom information
- assessing: an assessment exists and is being refined
- recommending: the assessment is complete, give next steps

Be concise and empathetic. You are not a doctor; for anything that sounds like an emergency, tell the user to seek emergency care."""

ASSESSMENT_REMINDER = (
    "REMINDER: the user is asking for an assessment. Call create_assessment now, "
    "then complete_assessment, then submit_final_response."
)

ASSESSMENT_KEYWORDS = (
    "assessment",
    "assess",
    "diagnosis",
    "evaluate",
    "evaluation",
)

RETRY_PROMPT = (
    "You did not finish the required steps. Call the missing functions now, "
    "in this order: {steps}. Do not answer with text only."
)


def wants_assessment(message: str) -> bool:
    lowered = (message or "").lower()
    return any(keyword in lowered for keyword in ASSESSMENT_KEYWORDS)


def build_system_prompt(
    ctx: ConversationContext,
    assessment_requested: bool = False,
) -> str:
    """
    Base instructions plus a light slice of the working set:
    only the active symptom names and the current phase.
    """
    parts = [SYSTEM_PROMPT]

    names = ctx.active_symptom_names()
    if names:
        parts.append(f"Current active symptoms: {', '.join(names)}")
        parts.append("Use get_active_episodes if you need their details.")

    parts.append(f"Current phase: {ctx.phase.value}")
    if ctx.current_assessment is not None:
        parts.append(
            f"Current assessment id: {ctx.current_assessment.id} "
            f"({ctx.current_assessment.hypothesis})"
        )

    if assessment_requested:
        parts.append(ASSESSMENT_REMINDER)

    return "\n\n".join(parts)


@dataclass
class AgentRun:
    """
    Outcome of one tool loop.

    - text: the model's last plain-text content (may be JSON, may be empty)
    - final_response: what submit_final_response captured, if it was called
    - iterations: model rounds used, retry included
    """

    text: str
    final_response: Optional[HealthAssistantResponse]
    iterations: int
    forced_completion: bool = False


class HealthChatAgent:
    """
    Runs the model/tool loop for one turn.

    Tool calls are dispatched against the session and the turn's context;
    results are fed back to the model until it stops calling tools, calls
    submit_final_response, or the iteration budget runs out.
    """

    def __init__(
        self,
        llm: LLMClient,
        registry: Optional[ToolRegistry] = None,
        max_iterations: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        settings = get_settings()
        self.llm = llm
        self.registry = registry or build_registry()
        self.max_iterations = max_iterations or settings.max_tool_iterations
        self.temperature = settings.llm_temperature if temperature is None else temperature

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        session: Session,
        ctx: ConversationContext,
        user_message: str,
        history: Optional[List[Dict[str, Any]]] = None,
    ) -> AgentRun:
        assessment_requested = wants_assessment(user_message)
        if assessment_requested:
            logger.info("User message contains assessment keywords, adding reminder")

        assessment_before = ctx.current_assessment.id if ctx.current_assessment else None

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": build_system_prompt(ctx, assessment_requested)}
        ]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_message})

        text, iterations = self._loop(session, ctx, messages)

        missing = self._missing_steps(ctx, assessment_requested, assessment_before)
        if missing:
            logger.warning("Model skipped required steps %s, retrying once", missing)
            messages.append(
                {"role": "user", "content": RETRY_PROMPT.format(steps=", ".join(missing))}
            )
            retry_text, retry_iterations = self._loop(session, ctx, messages)
            text = retry_text or text
            iterations += retry_iterations

        forced = self._force_completion(session, ctx, assessment_before)

        if ctx.final_response is None:
            logger.warning("submit_final_response was not called, falling back to raw text")

        return AgentRun(
            text=text,
            final_response=ctx.final_response,
            iterations=iterations,
            forced_completion=forced,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _loop(
        self,
        session: Session,
        ctx: ConversationContext,
        messages: List[Dict[str, Any]],
    ) -> tuple[str, int]:
        tools = self.registry.schemas()
        text = ""
        iterations = 0

        while iterations < self.max_iterations:
            iterations += 1
            response = self.llm.chat_with_tools(
                messages, tools, temperature=self.temperature
            )
            if response.content:
                text = response.content

            if not response.tool_calls:
                break

            messages.append(response.assistant_message())
            for call in response.tool_calls:
                logger.debug("Tool call %s(%s)", call.name, call.arguments)
                result = dispatch(session, ctx, self.registry, call.name, call.arguments)
                if not result.ok:
                    logger.info("Tool %s returned %s", call.name, result.error)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": result.to_tool_content(),
                    }
                )

            if ctx.final_response is not None:
                break
        else:
            logger.warning("Tool loop hit the iteration limit (%d)", self.max_iterations)

        return text, iterations

    def _assessment_created(self, ctx: ConversationContext, before: Optional[int]) -> bool:
        return ctx.current_assessment is not None and ctx.current_assessment.id != before

    def _missing_steps(
        self,
        ctx: ConversationContext,
        assessment_requested: bool,
        assessment_before: Optional[int],
    ) -> List[str]:
        steps: List[str] = []
        created = self._assessment_created(ctx, assessment_before)
        # A missing complete_assessment alone is forced afterwards, not retried
        if assessment_requested and not created and ctx.conversation_id is not None:
            steps.append("create_assessment")
            steps.append("complete_assessment")
        if ctx.final_response is None:
            steps.append("submit_final_response")
        return steps

    def _force_completion(
        self,
        session: Session,
        ctx: ConversationContext,
        assessment_before: Optional[int],
    ) -> bool:
        """
        An assessment created this turn must leave the turn completed.
        """
        if not self._assessment_created(ctx, assessment_before):
            return False
        if ctx.phase != ConversationPhase.ASSESSING:
            return False

        assessment_id = ctx.current_assessment.id
        logger.warning(
            "Assessment %s was created but complete_assessment was not called. Forcing completion.",
            assessment_id,
        )
        result = dispatch(
            session,
            ctx,
            self.registry,
            "complete_assessment",
            {"assessmentId": assessment_id},
        )
        return result.ok
