"""
Validator stage: checks a plan against the user's profile constraints.

Two tiers: a local pattern check that needs no network call, then a model
check reserved for rich profiles the local tier passed.
"""

import asyncio
import logging
import re
from typing import List, Optional

from ..models.core import AnalyzerResult, PlanRecommendation, ValidationVerdict
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError, build_messages
from ..utils.config import RouteBudget
from ..utils.json_utils import extract_json_object, get_str, get_str_list
from ..utils.logging_config import get_logger, log_stage
from .prompts import VALIDATOR_SYSTEM_PROMPT

logger = get_logger(__name__)

MIN_PROFILE_LENGTH = 30
RICH_PROFILE_LENGTH = 150

HIGH_INTENSITY_WORDS = ('hiit', 'sprint', 'intense', 'heavy', 'crossfit')
LIMITING_CONDITIONS = ('back pain', 'knee pain', 'injury', 'chronic pain', 'arthritis')

ALLERGIES = re.compile(r'allergies?:\s*([^\n]+)')
DISLIKES = re.compile(r'dislikes?:\s*([^\n;]+)')
AVOIDS = re.compile(r'avoids?:\s*([^\n;]+)')
CONDITIONS = re.compile(r'conditions?:\s*([^\n]+)')


def _profile_list(pattern: re.Pattern, profile: str) -> List[str]:
    match = pattern.search(profile)
    if not match:
        return []
    return [item.strip() for item in match.group(1).split(',') if item.strip()]


def local_conflicts(plan: PlanRecommendation, profile: str) -> List[str]:
    """Direct conflicts between the plan text and the profile's listed constraints."""
    lower = profile.lower()
    diet_text = ' '.join(plan.diet).lower()
    exercise_text = ' '.join(plan.exercise).lower()
    conflicts = []

    for allergy in _profile_list(ALLERGIES, lower):
        if allergy in diet_text:
            conflicts.append(f'ALLERGY CONFLICT: Plan suggests "{allergy}" but user is allergic')

    for dislike in _profile_list(DISLIKES, lower):
        if dislike in diet_text:
            conflicts.append(f'PREFERENCE CONFLICT: Plan suggests "{dislike}" but user dislikes it')

    for avoided in _profile_list(AVOIDS, lower):
        if avoided in exercise_text:
            conflicts.append(f'EXERCISE CONFLICT: Plan suggests "{avoided}" but user avoids it')

    limiting = [c for c in _profile_list(CONDITIONS, lower) if any(lc in c for lc in LIMITING_CONDITIONS)]
    if limiting:
        for word in HIGH_INTENSITY_WORDS:
            if word in exercise_text:
                conflicts.append(f"SAFETY CONFLICT: Plan suggests \"{word}\" exercise but user has {', '.join(limiting)}")

    return conflicts


def parse_verdict(raw: str) -> ValidationVerdict:
    parsed = extract_json_object(raw)
    return ValidationVerdict(approved=not parsed or parsed.get('approved') is not False,
                             conflicts=get_str_list(parsed, 'conflicts', [], 10),
                             suggestions=get_str_list(parsed, 'suggestions', [], 10),
                             reasoning=get_str(parsed, 'reasoning', 'Validation complete'))


class Validator:
    """Validates plans; never raises for model failures."""

    def __init__(self, llm: BedrockLLM, budget: RouteBudget):
        self.llm = llm
        self.budget = budget

    async def validate(self,
                       plan: PlanRecommendation,
                       analysis: AnalyzerResult,
                       constraints: Optional[str],
                       session_id: Optional[str] = None) -> ValidationVerdict:
        """
        Check a plan against profile constraints.

        Args:
            plan: Plan to check
            analysis: Current analysis (energy and risks inform the model tier)
            constraints: Profile text listing allergies, dislikes, avoided exercises and conditions
            session_id: Session identifier, used for logging only

        Returns:
            ValidationVerdict; approved when there is too little profile data to check
        """
        if not constraints or len(constraints) < MIN_PROFILE_LENGTH:
            return ValidationVerdict(approved=True, reasoning='No profile data, skipping validation')

        conflicts = local_conflicts(plan, constraints)
        if conflicts:
            log_stage(logger, logging.INFO, 'validator', f'Local validation found {len(conflicts)} conflicts', session_id)
            return ValidationVerdict(approved=False,
                                     conflicts=conflicts,
                                     reasoning='Local validation found direct conflicts with the user profile')

        if len(constraints) > RICH_PROFILE_LENGTH:
            return await self._validate_with_model(plan, analysis, constraints, session_id)

        return ValidationVerdict(approved=True, reasoning='Plan validated, no conflicts detected')

    async def _validate_with_model(self, plan: PlanRecommendation, analysis: AnalyzerResult, constraints: str,
                                   session_id: Optional[str]) -> ValidationVerdict:
        prompt = (f'USER PROFILE:\n{constraints}\n\n'
                  f'ANALYZER ASSESSMENT:\nEnergy: {analysis.energy_score}/100\n'
                  f"Risks: {', '.join(analysis.risk_flags) or 'none'}\n\n"
                  f"PLANNER RECOMMENDATIONS:\nDiet: {'; '.join(plan.diet)}\n"
                  f"Exercise: {'; '.join(plan.exercise)}\nRecovery: {'; '.join(plan.recovery)}")
        try:
            raw, _ = await asyncio.to_thread(self.llm.generate_response,
                                             build_messages([], prompt),
                                             VALIDATOR_SYSTEM_PROMPT,
                                             max_tokens=self.budget.max_tokens,
                                             temperature=self.budget.temperature)
        except BedrockLLMError as e:
            log_stage(logger, logging.WARNING, 'validator', f'Model validation failed, approving plan: {e}', session_id)
            return ValidationVerdict(approved=True, reasoning='Validation skipped (error)')
        return parse_verdict(raw)
