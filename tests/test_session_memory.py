import asyncio

from wellcoach.models.core import Role, Turn
from wellcoach.services.session_memory import SessionMemoryStore, energy_note


def _turn(index: int) -> Turn:
    return Turn(role=Role.USER if index % 2 == 0 else Role.ASSISTANT, content=f'message {index}')


def test_history_is_capped_and_evicts_oldest_first(memory):
    for index in range(20):
        memory.append('session-a', _turn(index))
        assert memory.size('session-a') == min(index + 1, 16)

    history = memory.recent_history('session-a', limit=16)
    assert [turn.content for turn in history] == [f'message {index}' for index in range(4, 20)]


def test_recent_history_returns_latest_window_oldest_first(memory):
    for index in range(10):
        memory.append('session-a', _turn(index))

    recent = memory.recent_history('session-a')
    assert len(recent) == 8
    assert recent[0].content == 'message 2'
    assert recent[-1].content == 'message 9'
    assert memory.recent_history('session-a', limit=0) == []


def test_sessions_are_isolated(memory):
    memory.append('session-a', _turn(0))
    memory.add_user_fact('session-a', 'Allergy: peanuts')

    assert memory.size('session-b') == 0
    assert memory.facts('session-b') == []
    assert memory.facts('session-a') == ['Allergy: peanuts']


def test_user_facts_are_deduplicated_and_bounded(memory_config, clock):
    memory_config.user_fact_cap = 3
    store = SessionMemoryStore(memory_config, clock=clock)
    for fact in ('a', 'b', 'a', 'c', 'd'):
        store.add_user_fact('session-a', fact)
    assert store.facts('session-a') == ['b', 'c', 'd']


def test_blank_notes_and_facts_are_ignored(memory):
    memory.add_adaptation_note('session-a', '   ')
    memory.add_user_fact('session-a', '')
    assert memory.notes('session-a') == []
    assert memory.facts('session-a') == []


def test_notes_return_most_recent(memory):
    for index in range(12):
        memory.add_adaptation_note('session-a', f'note {index}')
    assert memory.notes('session-a') == ['note 9', 'note 10', 'note 11']
    assert len(memory.notes('session-a', limit=20)) == 10


def test_last_energy_score_reads_latest_note(memory):
    assert memory.last_energy_score('session-a') is None
    memory.add_adaptation_note('session-a', energy_note(42))
    memory.add_adaptation_note('session-a', 'User prefers evening walks.')
    memory.add_adaptation_note('session-a', energy_note(55))
    assert memory.last_energy_score('session-a') == 55


def test_expired_sessions_are_evicted(memory, clock):
    memory.append('old-session', _turn(0))
    clock.advance(1800)
    memory.append('new-session', _turn(0))
    clock.advance(1900)

    assert memory.evict_expired() == 1
    assert 'old-session' not in memory
    assert 'new-session' in memory
    assert len(memory) == 1


def test_snapshot_lists_history_and_notes(memory):
    memory.append('session-a', Turn(role=Role.USER, content='hello'))
    memory.add_adaptation_note('session-a', 'User likes short replies.')

    snapshot = memory.snapshot('session-a')
    assert snapshot['memory_size'] == 1
    assert snapshot['history'][0]['role'] == 'user'
    assert snapshot['adaptation_notes'] == ['User likes short replies.']


def test_session_lock_is_shared_per_key(memory):
    assert memory.session_lock('session-a') is memory.session_lock('session-a')
    assert memory.session_lock('session-a') is not memory.session_lock('session-b')


def test_session_lock_serializes_turns(memory):
    order = []

    async def turn(name: str):
        async with memory.session_lock('session-a'):
            order.append(f'{name}-start')
            await asyncio.sleep(0.01)
            order.append(f'{name}-end')

    async def run():
        await asyncio.gather(turn('first'), turn('second'))

    asyncio.run(run())
    assert order == ['first-start', 'first-end', 'second-start', 'second-end']
