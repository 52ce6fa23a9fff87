"""Bounded multi-step tool execution.

``execute`` runs the routed decision and then whatever follow-up calls an agent proposes,
for at most ``max_iterations`` rounds. ``execute_plan`` runs an explicit plan and delivers
each step as soon as it finishes, so its result is always marked ``already_sent``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from relaybot.config import settings
from relaybot.errors import ToolExecutionError
from relaybot.logging_config import get_logger
from relaybot.schemas.engine import Decision
from relaybot.services.result import Result
from relaybot.services.tool_registry import MediaRefs, ToolContext, ToolOutput, ToolRegistry

logger = get_logger("execution_loop")

MAX_ITERATIONS_MESSAGE = "הגעתי למספר המקסימלי של ניסיונות. נסה לנסח את השאלה אחרת."

CREATION_TOOLS = {"create_image", "create_video", "edit_image", "edit_video", "image_to_video", "image_edit"}


@dataclass
class ToolCall:
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class ToolOutcome:
    call: ToolCall
    result: Result[ToolOutput]


@dataclass
class AgentTurn:
    calls: list[ToolCall] = field(default_factory=list)
    text: Optional[str] = None


class Agent(ABC):
    """Proposes follow-up tool calls after each round."""

    @abstractmethod
    async def next_turn(self, context: ToolContext, outcomes: list[ToolOutcome]) -> AgentTurn:
        pass


@dataclass
class MultiStepState:
    iteration: int = 0
    max_iterations: int = 5
    tools_used: list[str] = field(default_factory=list)
    already_sent: bool = False

    def record_tool(self, name: str) -> None:
        if name not in self.tools_used:
            self.tools_used.append(name)


@dataclass
class ExecutionResult:
    success: bool
    text: Optional[str] = None
    image_url: Optional[str] = None
    image_caption: Optional[str] = None
    video_url: Optional[str] = None
    video_caption: Optional[str] = None
    audio_url: Optional[str] = None
    poll: Optional[dict] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_info: Optional[str] = None
    error: Optional[str] = None
    iterations: int = 0
    tools_used: list[str] = field(default_factory=list)
    already_sent: bool = False
    multi_step: bool = False
    steps_completed: int = 0
    total_steps: int = 0


def is_creation_tool(name: str) -> bool:
    return name in CREATION_TOOLS or name.endswith(("_image", "_video", "_image_to_video"))


def assemble_result(outcomes: list[ToolOutcome], state: MultiStepState, final_text: Optional[str]) -> ExecutionResult:
    successes = [o for o in outcomes if o.result.ok and o.result.value is not None]
    if not successes:
        error = next((o.result.error for o in outcomes if o.result.error), None)
        return ExecutionResult(
            success=False,
            error=error or MAX_ITERATIONS_MESSAGE,
            iterations=state.iteration,
            tools_used=list(state.tools_used),
            already_sent=state.already_sent,
        )

    result = ExecutionResult(
        success=True,
        iterations=state.iteration,
        tools_used=list(state.tools_used),
        already_sent=state.already_sent,
    )
    # Latest asset of each kind wins.
    for outcome in successes:
        output = outcome.result.value
        if output.image_url:
            result.image_url, result.image_caption = output.image_url, output.image_caption
        if output.video_url:
            result.video_url, result.video_caption = output.video_url, output.video_caption
        if output.audio_url:
            result.audio_url = output.audio_url
        if output.poll:
            result.poll = output.poll
        if output.latitude is not None:
            result.latitude, result.longitude = output.latitude, output.longitude
            result.location_info = output.location_info

    tool_text = next((o.result.value.text for o in reversed(successes) if o.result.value.text), None)
    distinct_tools = {o.call.name for o in successes}
    has_tool_caption = bool(result.image_caption or result.video_caption)
    if final_text and len(distinct_tools) > 1 and has_tool_caption:
        # Tool captions win over the aggregate narration.
        result.text = tool_text
    else:
        result.text = final_text or tool_text
    return result


class ExecutionLoop:
    def __init__(self, registry: ToolRegistry, agent: Optional[Agent] = None, max_iterations: Optional[int] = None):
        self.registry = registry
        self.agent = agent
        self.max_iterations = max_iterations if max_iterations is not None else settings.agent_max_iterations

    async def execute(self, decision: Decision, context: ToolContext) -> ExecutionResult:
        state = MultiStepState(max_iterations=self.max_iterations)
        outcomes: list[ToolOutcome] = []
        succeeded_creation: set[str] = set()
        pending = [ToolCall(decision.tool, dict(decision.args))]
        final_text: Optional[str] = None

        try:
            while pending:
                if state.iteration >= state.max_iterations:
                    logger.warning(
                        f"Max iterations ({state.max_iterations}) reached",
                        extra={"context": {"chat_id": context.chat_id, "tools": state.tools_used}},
                    )
                    return ExecutionResult(
                        success=False,
                        error=MAX_ITERATIONS_MESSAGE,
                        iterations=state.iteration,
                        tools_used=list(state.tools_used),
                        already_sent=state.already_sent,
                    )

                state.iteration += 1
                logger.debug(f"Iteration {state.iteration}/{state.max_iterations}: {[c.name for c in pending]}")
                for call in pending:
                    outcome = await self._run_call(call, context, state, succeeded_creation)
                    outcomes.append(outcome)

                if self.agent is None:
                    break
                turn = await self.agent.next_turn(context, outcomes)
                pending = turn.calls
                if turn.text:
                    final_text = turn.text
        except Exception as e:
            logger.error(
                f"Execution loop failed: {e}",
                extra={"context": {"chat_id": context.chat_id, "iteration": state.iteration}},
                exc_info=True,
            )
            return ExecutionResult(
                success=False,
                error=ToolExecutionError(decision.tool, str(e)).user_message,
                iterations=state.iteration,
                tools_used=list(state.tools_used),
                already_sent=state.already_sent,
            )

        return assemble_result(outcomes, state, final_text)

    async def _run_call(
        self,
        call: ToolCall,
        context: ToolContext,
        state: MultiStepState,
        succeeded_creation: set[str],
    ) -> ToolOutcome:
        if is_creation_tool(call.name) and call.name in succeeded_creation:
            logger.warning(f"Blocking duplicate call to {call.name}")
            return ToolOutcome(
                call,
                Result.failure("Duplicate tool call blocked. This tool already succeeded for this request.", "duplicate"),
            )

        media = MediaRefs.from_request(context.request)
        result = await self.registry.dispatch(call.name, call.args, media, context)
        state.record_tool(call.name)
        if result.ok and result.value is not None:
            if is_creation_tool(call.name):
                succeeded_creation.add(call.name)
            if result.value.already_sent:
                state.already_sent = True
        return ToolOutcome(call, result)

    async def execute_plan(self, plan: list[Decision], context: ToolContext, deliverer) -> ExecutionResult:
        """Run each step and deliver it right away; a failed step does not stop the plan."""
        tools_used: list[str] = []
        steps_completed = 0
        iterations = 0

        for index, step in enumerate(plan, start=1):
            step_result = await self.execute(step, context)
            iterations += step_result.iterations
            for tool in step_result.tools_used:
                if tool not in tools_used:
                    tools_used.append(tool)

            if step_result.success:
                steps_completed += 1
                if not step_result.already_sent:
                    await deliverer.deliver(step_result, context.chat_id, context.quoted_message_id)
            else:
                await deliverer.send_notice(
                    context.chat_id,
                    f"❌ שגיאה בביצוע שלב {index}: {step_result.error}",
                    context.quoted_message_id,
                )

        return ExecutionResult(
            success=steps_completed > 0,
            error=None if steps_completed else "❌ אף שלב לא הושלם.",
            iterations=iterations,
            tools_used=tools_used,
            already_sent=True,
            multi_step=True,
            steps_completed=steps_completed,
            total_steps=len(plan),
        )
