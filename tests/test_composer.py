import asyncio
import json

from wellcoach.models.core import DispatchRoute, Role, Tone, Turn
from wellcoach.services.composer import DEFAULT_REPLY, Composer, ReplyFieldExtractor, parse_composed
from wellcoach.services.prompts import ROUTE_INSTRUCTIONS, VOICE_MODE_SUFFIX
from wellcoach.utils.config import RouteBudget

from .conftest import COMPOSER_JSON, FakeLLM

BUDGET = RouteBudget(max_tokens=500, temperature=0.7)


def _feed_all(chunks):
    extractor = ReplyFieldExtractor()
    return [extractor.feed(chunk) for chunk in chunks], extractor


def test_extractor_decodes_escapes_and_stops_at_closing_quote():
    deltas, extractor = _feed_all(['{"reply": "Hello \\"friend\\"\\nHow', ' are you?", "tone": "gentle"}'])
    assert deltas == ['Hello "friend"\nHow', ' are you?']
    assert extractor.done


def test_extractor_handles_marker_split_across_chunks():
    deltas, _ = _feed_all(['{"re', 'ply":', ' "Hi', '!"}'])
    assert deltas == ['', '', 'Hi', '!']


def test_extractor_waits_for_complete_unicode_escape():
    deltas, _ = _feed_all(['{"reply": "caf\\u00', 'e9 time"}'])
    assert deltas == ['caf', 'é time']


def test_extractor_skips_reply_used_as_a_value():
    deltas, _ = _feed_all(['{"tone": "reply", "reply": "x"}'])
    assert ''.join(deltas) == 'x'


def test_extractor_ignores_input_after_done():
    extractor = ReplyFieldExtractor()
    extractor.feed('{"reply": "done"}')
    assert extractor.feed('"reply": "more"') == ''


def test_parse_composed_plain_text_becomes_reply():
    composed = parse_composed('Just rest today.')
    assert composed.reply == 'Just rest today.'
    assert composed.tone == Tone.EMPATHETIC
    assert composed.follow_up == ''


def test_parse_composed_defaults_and_aliases():
    assert parse_composed('{}').reply == DEFAULT_REPLY

    composed = parse_composed(json.dumps({
        'reply': 'Nice work!',
        'tone': 'CELEBRATORY',
        'feedbackPrompt': 'Want more?',
        'profileUpdates': {'addAllergies': ['peanuts'], 'unknown': ['x']}
    }))
    assert composed.tone == Tone.CELEBRATORY
    assert composed.follow_up == 'Want more?'
    assert composed.profile_updates.add_allergies == ['peanuts']
    assert composed.text == 'Nice work!\n\nWant more?'


def test_unknown_tone_defaults_to_empathetic():
    assert parse_composed('{"reply": "hi", "tone": "sarcastic"}').tone == Tone.EMPATHETIC


def test_lightweight_prompt_uses_route_instruction():
    composer = Composer(FakeLLM(), BUDGET)
    history = [Turn(role=Role.USER, content='I slept badly'), Turn(role=Role.ASSISTANT, content='Sorry!')]
    prompt = composer.build_prompt('hi', DispatchRoute.GREETING, history)
    assert ROUTE_INSTRUCTIONS['greeting'] in prompt
    assert '- "I slept badly"' in prompt
    assert 'Analyzer summary' not in prompt


def test_voice_system_prompt_adds_suffix():
    composer = Composer(FakeLLM(), BUDGET)
    assert composer._system_prompt(True).endswith(VOICE_MODE_SUFFIX)
    assert VOICE_MODE_SUFFIX not in composer._system_prompt(False)


def test_compose_stream_emits_only_reply_text():
    llm = FakeLLM()
    composer = Composer(llm, BUDGET)
    deltas = []

    async def on_delta(delta):
        deltas.append(delta)

    composed = asyncio.run(composer.compose_stream('I am tired', DispatchRoute.FULL, [], on_delta))

    assert ''.join(deltas) == json.loads(COMPOSER_JSON)['reply']
    assert len(deltas) > 1
    assert composed.reply == ''.join(deltas)
    assert composed.follow_up == 'How did you sleep last night?'
    assert llm.calls[0][:2] == ('composer', 'stream')


def test_compose_stream_without_reply_field_sends_parsed_reply_once():
    composer = Composer(FakeLLM(responses={'composer': 'Take it easy tonight.'}), BUDGET)
    deltas = []

    async def on_delta(delta):
        deltas.append(delta)

    composed = asyncio.run(composer.compose_stream('thanks', DispatchRoute.QUICK, [], on_delta))
    assert deltas == ['Take it easy tonight.']
    assert composed.reply == 'Take it easy tonight.'
