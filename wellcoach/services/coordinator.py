"""
Agent pipeline coordinator: runs one user turn from dispatch to persisted reply.
"""

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from ..models.core import (AnalyzerResult, ComposedReply, DispatchDecision, DispatchRoute, PlanRecommendation, Role,
                           Turn, TurnRequest, TurnResult, ValidationVerdict, WearableSnapshot, to_jsonable)
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import BudgetConfig, StabilizerConfig
from ..utils.config import config as app_config
from ..utils.logging_config import get_logger, log_stage
from ..utils.sanitize import detect_prompt_injection, sanitize_feedback, sanitize_message
from .analyzer import Analyzer, stabilize_energy_score
from .composer import Composer
from .dispatcher import Dispatcher
from .fallback import FallbackEngine, is_quota_error
from .nutrition import GENERIC_TIPS, NutritionLookup
from .planner import Planner, conflict_feedback
from .prompts import format_user_context
from .session_memory import SessionMemoryStore, energy_note
from .streaming import PUBLIC_ERROR_MESSAGE, EventChannel, EventType, TransportDisconnect
from .tools import PlannerToolbox
from .validator import Validator
from .wearables import WearableProvider

logger = get_logger(__name__)

FOLLOWUP_DEFAULT_ENERGY = 65
LIGHTWEIGHT_ENERGY = 70
VALIDATED_ROUTES = (DispatchRoute.FULL, DispatchRoute.PHOTO, DispatchRoute.FOLLOWUP)
FACT_MARKERS = ('allerg', 'prefer')


class TurnState(str, Enum):
    DISPATCHED = 'dispatched'
    ANALYZED = 'analyzed'
    PLANNED = 'planned'
    VALIDATED = 'validated'
    COMPOSED = 'composed'
    PERSISTED = 'persisted'
    FAILED = 'failed'


class ModelHardFailure(Exception):
    """Custom exception for non-quota model failures that end a turn."""

    def __init__(self, stage: str, public_message: str = PUBLIC_ERROR_MESSAGE):
        super().__init__(f'Model call failed during {stage}')
        self.stage = stage
        self.public_message = public_message


@dataclass
class TurnContext:
    """Mutable state of one turn while it moves through the pipeline."""
    request: TurnRequest
    message: str
    feedback: Optional[str]
    history: List[Turn]
    notes: List[str]
    facts: List[str]
    user_context: str
    state: Optional[TurnState] = None
    stage: str = 'dispatcher'
    decision: Optional[DispatchDecision] = None
    wearable: Optional[WearableSnapshot] = None
    analysis: Optional[AnalyzerResult] = None
    plan: Optional[PlanRecommendation] = None
    nutrition_context: List[str] = field(default_factory=list)
    validation: Optional[ValidationVerdict] = None
    composed: Optional[ComposedReply] = None
    used_fallback: bool = False
    timing: Dict[str, int] = field(default_factory=dict)

    @property
    def session_id(self) -> str:
        return self.request.session_id

    @property
    def route(self) -> DispatchRoute:
        return self.decision.route if self.decision else DispatchRoute.FULL

    @property
    def constraints(self) -> Optional[str]:
        context = self.request.user_context
        return context.constraints if context else None

    @property
    def name(self) -> Optional[str]:
        context = self.request.user_context
        return context.name if context else None


class AgentCoordinator:
    """Runs dispatcher, analyzer, planner, validator and composer for a turn.

    Quota errors switch the remaining stages to the fallback engine; any other
    model failure ends the turn with ModelHardFailure. Turns for the same
    session are serialized by the memory store's per-session lock.
    """

    def __init__(self,
                 llm: BedrockLLM,
                 memory: SessionMemoryStore,
                 fallback: Optional[FallbackEngine] = None,
                 nutrition: Optional[NutritionLookup] = None,
                 wearables: Optional[WearableProvider] = None,
                 budgets: Optional[BudgetConfig] = None,
                 stabilizer: Optional[StabilizerConfig] = None,
                 enable_tools: bool = True):
        budgets = budgets or app_config.budgets
        self.llm = llm
        self.memory = memory
        self.fallback = fallback or FallbackEngine()
        self.nutrition = nutrition or NutritionLookup()
        self.wearables = wearables or WearableProvider(use_mock=app_config.use_mock_wearables)
        self.stabilizer = stabilizer or app_config.stabilizer
        self.enable_tools = enable_tools

        self.dispatcher = Dispatcher(llm, budgets.dispatcher)
        self.analyzer = Analyzer(llm, budgets.analyzer)
        self.planner = Planner(llm, budgets.planner)
        self.validator = Validator(llm, budgets.validator)
        self.composer = Composer(llm, budgets.composer)

    async def run_turn(self, request: TurnRequest, channel: Optional[EventChannel] = None) -> TurnResult:
        """
        Run one turn end to end and persist it to session memory.

        Args:
            request: The user turn
            channel: Event channel for progress events; None for non-streaming callers

        Returns:
            TurnResult for the turn

        Raises:
            ModelHardFailure: If a model call fails for a reason other than quota
            TransportDisconnect: If the channel was closed by the caller
        """
        started = time.monotonic()
        message = sanitize_message(request.message)
        feedback = sanitize_feedback(request.feedback) if request.feedback else None
        session_id = request.session_id

        injection = detect_prompt_injection(message)
        if injection:
            log_stage(logger, logging.WARNING, 'coordinator', f'Prompt injection detected: {injection}', session_id)

        log_stage(logger, logging.INFO, 'coordinator', 'Starting agent pipeline', session_id)
        self.memory.evict_expired()

        async with self.memory.session_lock(session_id):
            ctx = TurnContext(request=request,
                              message=message,
                              feedback=feedback,
                              history=self.memory.recent_history(session_id),
                              notes=self.memory.notes(session_id),
                              facts=self.memory.facts(session_id),
                              user_context=format_user_context(request.user_context))
            try:
                await self._run_stages(ctx, channel)
            except (TransportDisconnect, asyncio.CancelledError):
                if ctx.composed is not None and ctx.state != TurnState.PERSISTED:
                    self._persist(ctx)
                raise
            except BedrockLLMError as e:
                ctx.state = TurnState.FAILED
                log_stage(logger, logging.ERROR, ctx.stage, f'Model call failed: {e}', session_id)
                raise ModelHardFailure(ctx.stage) from e

            self._persist(ctx)

        ctx.timing['total'] = _elapsed_ms(started)
        log_stage(logger, logging.INFO, 'coordinator',
                  f"Pipeline complete ({ctx.route.value} route, {ctx.timing['total']}ms)"
                  f"{' [fallback]' if ctx.used_fallback else ''}", session_id)

        return TurnResult(session_id=session_id,
                          reply=ctx.composed.text,
                          route=ctx.route,
                          analyzer=ctx.analysis,
                          plan=ctx.plan,
                          composed=ctx.composed,
                          memory_size=self.memory.size(session_id),
                          wearable=ctx.wearable,
                          validation=ctx.validation,
                          timing=ctx.timing,
                          used_fallback=ctx.used_fallback)

    def session_status(self, session_id: str) -> Dict[str, Any]:
        """Memory size and wearable snapshot for a session, without creating it."""
        known = session_id in self.memory
        history = self.memory.recent_history(session_id) if known else []
        return {
            'session_id': session_id,
            'memory_size': self.memory.size(session_id) if known else 0,
            'wearable': to_jsonable(self.wearables.resolve(session_id, history=history)),
            'adaptation_notes': self.memory.notes(session_id) if known else [],
        }

    @contextmanager
    def _stage(self, ctx: TurnContext, stage: str) -> Iterator[None]:
        ctx.stage = stage
        start = time.monotonic()
        try:
            yield
        finally:
            ctx.timing[stage] = ctx.timing.get(stage, 0) + _elapsed_ms(start)

    async def _emit(self,
                    channel: Optional[EventChannel],
                    event_type: EventType,
                    message: str = '',
                    agent: Optional[str] = None,
                    payload: Any = None,
                    **data: Any) -> None:
        if channel is not None:
            await channel.send(event_type, message=message, agent=agent, payload=payload, **data)

    async def _run_stages(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        request = ctx.request
        with self._stage(ctx, 'dispatcher'):
            ctx.decision = await self.dispatcher.classify(ctx.message, request.image is not None, ctx.history,
                                                          ctx.session_id)
        ctx.state = TurnState.DISPATCHED
        await self._emit(channel,
                         EventType.DISPATCHER,
                         message=f'Route: {ctx.route.value}',
                         payload={
                             'route': ctx.route,
                             'confidence': ctx.decision.confidence,
                             'reasoning': ctx.decision.reasoning
                         })

        try:
            if ctx.route.is_lightweight:
                await self._run_lightweight(ctx, channel)
            else:
                await self._run_pipeline(ctx, channel)
        except BedrockLLMError as e:
            if not is_quota_error(e):
                raise
            log_stage(logger, logging.WARNING, ctx.stage, 'Bedrock quota exceeded, switching to fallback mode',
                      ctx.session_id)
            await self._fall_back(ctx, channel)

        ctx.state = TurnState.COMPOSED

    async def _run_lightweight(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        await self._emit(channel, EventType.STATUS, 'Responding...')
        previous = self.memory.last_energy_score(ctx.session_id)
        ctx.analysis = AnalyzerResult(summary='', energy_score=LIGHTWEIGHT_ENERGY if previous is None else previous)
        ctx.plan = PlanRecommendation(summary='')
        await self._compose(ctx, channel)

    async def _run_pipeline(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        request = ctx.request
        await self._emit(channel, EventType.STATUS, 'Checking your recent activity...')
        health_data = request.user_context.health_data if request.user_context else None
        ctx.wearable = self.wearables.resolve(ctx.session_id, health_data, ctx.history, ctx.message)

        if ctx.route == DispatchRoute.FOLLOWUP:
            await self._emit(channel, EventType.STATUS, 'Building on our conversation...')
            previous = self.memory.last_energy_score(ctx.session_id)
            ctx.analysis = AnalyzerResult(summary='Follow-up to previous conversation, using existing context.',
                                          energy_score=FOLLOWUP_DEFAULT_ENERGY if previous is None else previous,
                                          key_signals=['Follow-up message'])
            ctx.nutrition_context = await asyncio.to_thread(self.nutrition.context, ctx.message)
        else:
            await self._emit(channel, EventType.STATUS, 'Analyzing your health data...')
            with self._stage(ctx, 'analyzer'):
                analysis, ctx.nutrition_context = await asyncio.gather(
                    self.analyzer.run(ctx.message,
                                      ctx.wearable,
                                      ctx.history,
                                      ctx.notes,
                                      ctx.facts,
                                      ctx.user_context,
                                      ctx.feedback,
                                      request.image,
                                      session_id=ctx.session_id),
                    asyncio.to_thread(self.nutrition.context, ctx.message))
            analysis.energy_score = self._stabilize(ctx, analysis.energy_score)
            ctx.analysis = analysis
        ctx.state = TurnState.ANALYZED
        await self._emit(channel, EventType.AGENT_UPDATE, ctx.analysis.summary, agent='analyzer', payload=ctx.analysis)

        await self._emit(channel, EventType.STATUS, 'Building your plan...')
        with self._stage(ctx, 'planner'):
            ctx.plan = await self._plan(ctx)
        ctx.state = TurnState.PLANNED
        await self._emit(channel, EventType.AGENT_UPDATE, ctx.plan.summary, agent='planner', payload=ctx.plan)

        if ctx.constraints and ctx.route in VALIDATED_ROUTES:
            await self._validate(ctx, channel)

        await self._emit(channel, EventType.STATUS, 'Putting it together...')
        await self._compose(ctx, channel)

    async def _plan(self, ctx: TurnContext, feedback: Optional[str] = None) -> PlanRecommendation:
        toolbox = None
        if self.enable_tools:
            goals = ctx.request.user_context.goals if ctx.request.user_context else {}
            toolbox = PlannerToolbox(ctx.wearable, self.nutrition, goals)
        return await self.planner.run(ctx.message,
                                      ctx.analysis,
                                      ctx.nutrition_context,
                                      ctx.history,
                                      ctx.notes,
                                      ctx.facts,
                                      ctx.user_context,
                                      feedback or ctx.feedback,
                                      tool_executor=toolbox)

    async def _validate(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        await self._emit(channel, EventType.STATUS, 'Checking the plan against your profile...')
        with self._stage(ctx, 'validator'):
            verdict = await self.validator.validate(ctx.plan, ctx.analysis, ctx.constraints, ctx.session_id)
        ctx.validation = verdict
        await self._emit(channel, EventType.AGENT_UPDATE, verdict.reasoning, agent='validator', payload=verdict)

        if not verdict.approved:
            log_stage(logger, logging.INFO, 'validator', f'Plan rejected with {len(verdict.conflicts)} conflicts, '
                      're-planning once', ctx.session_id)
            await self._emit(channel, EventType.STATUS, 'Adjusting the plan to your profile...')
            rejected = ctx.plan
            # a quota error during the re-plan leaves the plan to the fallback engine
            ctx.plan = None
            with self._stage(ctx, 'planner'):
                ctx.plan = await self._plan(ctx, conflict_feedback(verdict))
            log_stage(logger, logging.DEBUG, 'planner', f'Re-plan replaced "{rejected.summary[:60]}"', ctx.session_id)
            await self._emit(channel, EventType.AGENT_UPDATE, ctx.plan.summary, agent='planner', payload=ctx.plan)
        ctx.state = TurnState.VALIDATED

    async def _compose(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        request = ctx.request
        lightweight = ctx.route.is_lightweight
        kwargs = dict(analysis=None if lightweight else ctx.analysis,
                      plan=None if lightweight else ctx.plan,
                      user_context=ctx.user_context,
                      feedback=ctx.feedback)

        with self._stage(ctx, 'composer'):
            if request.streaming and channel is not None and request.mode == 'text':
                async def on_delta(delta: str) -> None:
                    await channel.send(EventType.TEXT_CHUNK, text=delta)

                try:
                    ctx.composed = await self.composer.compose_stream(ctx.message, ctx.route, ctx.history, on_delta,
                                                                      **kwargs)
                except BedrockLLMError as e:
                    if is_quota_error(e):
                        raise
                    log_stage(logger, logging.WARNING, 'composer',
                              f'Streaming failed, retrying in whole-response mode: {e}', ctx.session_id)
                    ctx.composed = await self.composer.compose(ctx.message, ctx.route, ctx.history, **kwargs)
            else:
                ctx.composed = await self.composer.compose(ctx.message,
                                                           ctx.route,
                                                           ctx.history,
                                                           voice=request.mode == 'voice',
                                                           **kwargs)
        await self._emit(channel, EventType.AGENT_UPDATE, 'Response ready', agent='composer', payload=ctx.composed)

    async def _fall_back(self, ctx: TurnContext, channel: Optional[EventChannel]) -> None:
        """Finish the turn with the fallback engine, keeping any stage that already completed."""
        ctx.used_fallback = True
        ctx.stage = 'fallback'

        if ctx.route.is_lightweight:
            ctx.composed = self.fallback.brief(ctx.route, ctx.name)
            await self._emit(channel, EventType.AGENT_UPDATE, 'Response ready', agent='composer', payload=ctx.composed)
            return

        if ctx.wearable is None:
            ctx.wearable = self.wearables.resolve(ctx.session_id, history=ctx.history, message=ctx.message)

        if ctx.analysis is None:
            await self._emit(channel, EventType.STATUS, 'Reading your health data...')
            ctx.analysis = self.fallback.analyze(ctx.message, ctx.wearable)
            ctx.analysis.energy_score = self._stabilize(ctx, ctx.analysis.energy_score)
            await self._emit(channel, EventType.AGENT_UPDATE, ctx.analysis.summary, agent='analyzer',
                             payload=ctx.analysis)

        if ctx.plan is None:
            await self._emit(channel, EventType.STATUS, 'Creating your plan...')
            ctx.plan = self.fallback.plan(ctx.message, ctx.analysis)
            if not ctx.nutrition_context:
                ctx.nutrition_context = await asyncio.to_thread(self.nutrition.context, ctx.message)
            if ctx.nutrition_context != GENERIC_TIPS:
                ctx.plan.nutrition_context = list(ctx.nutrition_context)
            await self._emit(channel, EventType.AGENT_UPDATE, ctx.plan.summary, agent='planner', payload=ctx.plan)

        await self._emit(channel, EventType.STATUS, 'Putting it together...')
        ctx.composed = self.fallback.compose(ctx.message, ctx.analysis, ctx.plan, ctx.name)
        await self._emit(channel, EventType.AGENT_UPDATE, 'Response ready', agent='composer', payload=ctx.composed)

    def _stabilize(self, ctx: TurnContext, raw_score: int) -> int:
        previous = self.memory.last_energy_score(ctx.session_id)
        score = stabilize_energy_score(raw_score, previous, ctx.message, self.stabilizer)
        if score != raw_score:
            log_stage(logger, logging.INFO, 'analyzer', f'Energy score stabilized {raw_score} -> {score} '
                      f'(previous: {previous})', ctx.session_id)
        return score

    def _persist(self, ctx: TurnContext) -> None:
        """Write the completed turn to session memory.

        Runs without awaiting, so a cancelled stream can never leave a turn
        half-written.
        """
        session_id = ctx.session_id
        user_content = ctx.message
        if not ctx.route.is_lightweight:
            if ctx.feedback:
                self.memory.add_adaptation_note(session_id, f'User feedback: {ctx.feedback}')
                user_content = f'{ctx.message}\nFeedback: {ctx.feedback}'
            note = ctx.composed.adaptation_note
            self.memory.add_adaptation_note(session_id, note)
            self.memory.add_adaptation_note(session_id, energy_note(ctx.analysis.energy_score))
            if any(marker in note.lower() for marker in FACT_MARKERS):
                self.memory.add_user_fact(session_id, note)
            updates = ctx.composed.profile_updates
            if updates is not None:
                for allergy in updates.add_allergies:
                    self.memory.add_user_fact(session_id, f'Allergy: {allergy}')
                for dislike in updates.add_food_dislikes:
                    self.memory.add_user_fact(session_id, f'Dislikes: {dislike}')

        self.memory.append(session_id, Turn(role=Role.USER, content=user_content))
        self.memory.append(session_id, Turn(role=Role.ASSISTANT, content=ctx.composed.text))
        ctx.state = TurnState.PERSISTED


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
