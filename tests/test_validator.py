import asyncio

from wellcoach.models.core import AnalyzerResult, PlanRecommendation
from wellcoach.services.validator import Validator, local_conflicts, parse_verdict
from wellcoach.utils.config import RouteBudget

from .conftest import FakeLLM, hard_error

ANALYSIS = AnalyzerResult(summary='Tired', energy_score=40, risk_flags=['Short sleep'])
BUDGET = RouteBudget(max_tokens=300, temperature=0.1)
RICH_PROFILE = ('Allergies: shellfish\nDislikes: mushrooms\nConditions: mild asthma\n'
                'Goals: lose 5kg before summer while keeping energy up for work and training three times a week')


def _plan(diet=('Oatmeal with berries', ), exercise=('20 minute walk', )):
    return PlanRecommendation(summary='Plan', diet=list(diet), exercise=list(exercise))


def _validate(llm, plan, constraints):
    return asyncio.run(Validator(llm, BUDGET).validate(plan, ANALYSIS, constraints, 'session-test'))


def test_missing_or_short_profile_is_approved_without_checks():
    llm = FakeLLM()
    assert _validate(llm, _plan(), None).approved
    assert _validate(llm, _plan(), 'Allergies: nuts').approved
    assert llm.calls == []


def test_allergen_in_diet_is_rejected_locally():
    llm = FakeLLM()
    plan = _plan(diet=['Peanut butter toast', 'Shrimp salad'])
    verdict = _validate(llm, plan, 'Allergies: peanut, shrimp\nDislikes: olives')
    assert not verdict.approved
    assert verdict.conflicts == [
        'ALLERGY CONFLICT: Plan suggests "peanut" but user is allergic',
        'ALLERGY CONFLICT: Plan suggests "shrimp" but user is allergic',
    ]
    assert llm.calls == []


def test_high_intensity_with_limiting_condition_is_unsafe():
    conflicts = local_conflicts(_plan(exercise=['HIIT intervals', 'Stretching']),
                                'Conditions: chronic back pain\nAvoids: running')
    assert conflicts == ['SAFETY CONFLICT: Plan suggests "hiit" exercise but user has chronic back pain']


def test_avoided_exercise_and_dislike_are_reported():
    conflicts = local_conflicts(_plan(diet=['Olives and feta'], exercise=['Easy running']),
                                'Dislikes: olives\nAvoids: running')
    assert len(conflicts) == 2
    assert conflicts[0].startswith('PREFERENCE CONFLICT')
    assert conflicts[1].startswith('EXERCISE CONFLICT')


def test_medium_profile_passes_without_model():
    llm = FakeLLM()
    verdict = _validate(llm, _plan(), 'Allergies: shellfish\nDislikes: mushrooms')
    assert verdict.approved
    assert llm.calls == []


def test_rich_profile_uses_model_verdict():
    llm = FakeLLM(responses={
        'validator': '{"approved": false, "conflicts": ["Too much volume"], "suggestions": ["Shorter walk"]}'
    })
    verdict = _validate(llm, _plan(), RICH_PROFILE)
    assert not verdict.approved
    assert verdict.conflicts == ['Too much volume']
    assert llm.count('validator') == 1


def test_model_failure_approves():
    llm = FakeLLM(errors={'validator': hard_error()})
    verdict = _validate(llm, _plan(), RICH_PROFILE)
    assert verdict.approved
    assert verdict.reasoning == 'Validation skipped (error)'


def test_parse_verdict_defaults_to_approved():
    assert parse_verdict('garbage').approved
    assert parse_verdict('{"approved": "no"}').approved
    assert not parse_verdict('{"approved": false}').approved
