"""
Planner stage: turns the analysis into a concrete plan for today.
"""

import asyncio
import json
from typing import List, Optional, Sequence

from ..models.core import AnalyzerResult, PlanRecommendation, Turn, ValidationVerdict, to_jsonable
from ..utils.bedrock_llm import BedrockLLM, ToolExecutor, build_messages
from ..utils.config import RouteBudget
from ..utils.json_utils import extract_json_object, get_str, get_str_list
from ..utils.logging_config import get_logger
from .prompts import PLANNER_SYSTEM_PROMPT, PLANNER_TOOLS_NOTE, bullet_block, join_prompt
from .tools import PLANNER_TOOLS

logger = get_logger(__name__)

DEFAULT_SUMMARY = 'A light recovery-first plan balancing energy support and movement.'
DEFAULT_DIET = ['Post-work meal: lean protein + whole grains + vegetables.',
                'Evening snack: Greek yogurt with berries or nuts.']
DEFAULT_EXERCISE = ['15-20 minute low-intensity walk after work.', '6 minutes of mobility and breathing before bed.']
DEFAULT_HYDRATION = ['Spread water intake across afternoon and evening.']
DEFAULT_RECOVERY = ['Aim for consistent bedtime and 7+ hours sleep opportunity.']

MAX_TOOL_ROUNDS = 2


def parse_plan(raw: str, nutrition_context: List[str]) -> PlanRecommendation:
    """Parse model output, applying a default to every missing or mistyped field."""
    parsed = extract_json_object(raw)
    return PlanRecommendation(summary=get_str(parsed, 'summary', DEFAULT_SUMMARY),
                              diet=get_str_list(parsed, 'diet', DEFAULT_DIET, 6),
                              exercise=get_str_list(parsed, 'exercise', DEFAULT_EXERCISE, 6),
                              hydration=get_str_list(parsed, 'hydration', DEFAULT_HYDRATION, 3),
                              recovery=get_str_list(parsed, 'recovery', DEFAULT_RECOVERY, 3),
                              nutrition_context=get_str_list(parsed, 'nutritionContext', nutrition_context, 6))


def conflict_feedback(verdict: ValidationVerdict) -> str:
    """Corrective feedback injected into the re-plan after a rejected validation."""
    conflicts = '\n'.join(f'- {conflict}' for conflict in verdict.conflicts)
    suggestions = '; '.join(verdict.suggestions) or 'choose safe substitutes'
    return (f"CRITICAL: The Validator agent found these conflicts with the user's profile:\n{conflicts}\n\n"
            f'You MUST revise the plan to avoid ALL conflicts. Suggested alternatives: {suggestions}')


class Planner:
    """Runs the planning call, with tool use when a tool executor is supplied."""

    def __init__(self, llm: BedrockLLM, budget: RouteBudget):
        self.llm = llm
        self.budget = budget

    def build_prompt(self,
                     message: str,
                     analysis: AnalyzerResult,
                     nutrition_context: List[str],
                     notes: List[str],
                     facts: List[str],
                     user_context: str = '',
                     feedback: Optional[str] = None,
                     with_tools: bool = False) -> str:
        return join_prompt(
            f'User message: {message}',
            f'User feedback on previous plan: {feedback}' if feedback else '',
            f'Analyzer assessment: {json.dumps(to_jsonable(analysis))}\nEnergy score: {analysis.energy_score}/100',
            f"Nutrition context: {' | '.join(nutrition_context)}",
            bullet_block('Adaptation notes', notes),
            bullet_block('Known user preferences/restrictions', facts),
            f'User context:\n{user_context}' if user_context else '',
            PLANNER_TOOLS_NOTE if with_tools else '',
        )

    async def run(self,
                  message: str,
                  analysis: AnalyzerResult,
                  nutrition_context: List[str],
                  history: Sequence[Turn],
                  notes: List[str],
                  facts: List[str],
                  user_context: str = '',
                  feedback: Optional[str] = None,
                  tool_executor: Optional[ToolExecutor] = None) -> PlanRecommendation:
        """
        Produce a PlanRecommendation.

        Args:
            feedback: User feedback on the previous plan or validator conflicts for a re-plan
            tool_executor: When given, the model may call PLANNER_TOOLS

        Raises:
            BedrockLLMError: If the model call fails after retries
        """
        prompt = self.build_prompt(message, analysis, nutrition_context, notes, facts, user_context, feedback,
                                   tool_executor is not None)
        messages = build_messages(history, prompt)

        if tool_executor is not None:
            raw = await asyncio.to_thread(self.llm.generate_with_tools,
                                          messages,
                                          PLANNER_SYSTEM_PROMPT,
                                          PLANNER_TOOLS,
                                          tool_executor,
                                          max_tokens=self.budget.max_tokens,
                                          temperature=self.budget.temperature,
                                          max_rounds=MAX_TOOL_ROUNDS)
        else:
            raw, _ = await asyncio.to_thread(self.llm.generate_response,
                                             messages,
                                             PLANNER_SYSTEM_PROMPT,
                                             max_tokens=self.budget.max_tokens,
                                             temperature=self.budget.temperature)

        plan = parse_plan(raw, nutrition_context)
        logger.debug(f'Plan: {plan.summary} ({len(plan.diet)} diet, {len(plan.exercise)} exercise items)')
        return plan
