import asyncio
from unittest.mock import AsyncMock

import pytest

from prereq_tutor.errors import (
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    UpstreamError,
)
from prereq_tutor.models.schemas import (
    MessageRole,
    PracticeProblem,
    SessionScreen,
    SessionStatus,
)
from prereq_tutor.services.session import service as session_service
from prereq_tutor.services.session.service import (
    ACTIVE_SESSIONS_COLLECTION,
    SESSIONS_COLLECTION,
    SessionManager,
    SessionRegistry,
    cleanup_abandoned_sessions,
    document_to_session,
    session_to_document,
)

PROBLEMS = [
    PracticeProblem(text="Solve x + 4 = 9", hint="Undo the +4", solution="x = 5"),
    PracticeProblem(text="Solve x - 2 = 7", hint="Undo the -2", solution="x = 9"),
    PracticeProblem(text="Solve 3x = 12", hint="Undo the times 3", solution="x = 4"),
]


def _new_manager(store, clock, user_id="alice"):
    return SessionManager(store, user_id, debounce_seconds=0.05, clock=clock)


async def _stored(store, session_id):
    return document_to_session(await store.get(SESSIONS_COLLECTION, session_id))


async def _practice(manager, results):
    for correct in results:
        await manager.record_problem_attempt("answer", correct)
        await manager.next_problem()


# === Lifecycle ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session(manager, memory_store, clock):
    session = await manager.create_session(
        "Solve 2x + 3 = 11",
        problem_latex="2x + 3 = 11",
        initial_message="Let's work on this together!",
        main_skill_id="two_step_equations",
    )

    assert session.session_id == f"session_alice_{int(clock().timestamp() * 1000)}"
    assert session.status == SessionStatus.ACTIVE
    assert session.current_screen == SessionScreen.DIAGNOSIS
    assert session.skill_stack == []
    assert session.main_problem.latex == "2x + 3 = 11"
    assert [m.role for m in session.messages] == [MessageRole.ASSISTANT]

    assert await _stored(memory_store, session.session_id) == session
    remembered = await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice")
    assert remembered == {"session_id": session.session_id}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_without_opening_message(manager):
    session = await manager.create_session("Solve 3x = 12")
    assert session.messages == []
    assert session.main_skill_id is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_load_session(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id

    other_device = _new_manager(memory_store, clock)
    loaded = await other_device.load_session(session_id)
    assert loaded == active_manager.session

    with pytest.raises(NotFoundError):
        await other_device.load_session("session_alice_0")

    with pytest.raises(UnauthorizedError):
        await _new_manager(memory_store, clock, "bob").load_session(session_id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_operations_need_a_session(manager):
    with pytest.raises(InvalidStateError):
        await manager.add_message(MessageRole.USER, "hello")
    with pytest.raises(InvalidStateError):
        await manager.branch_to_skill("fractions", "Fractions")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_end_session(active_manager, memory_store, clock):
    clock.advance(minutes=5)
    session = await active_manager.end_session()

    assert session.status == SessionStatus.COMPLETED
    assert session.current_screen == SessionScreen.COMPLETED
    assert session.completed_at == clock()
    assert (await _stored(memory_store, session.session_id)).status == SessionStatus.COMPLETED
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


# === Branching ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_branch_to_skill(active_manager, memory_store):
    session = await active_manager.branch_to_skill(
        "one_step_equations", "One-Step Equations", "Solve x + a = b"
    )

    assert session.current_screen == SessionScreen.FORK
    assert session.branch_history == ["one_step_equations"]
    assert session.skill_stack[-1].skill_name == "One-Step Equations"
    assert active_manager.depth == 1
    assert active_manager.current_branch.skill_id == "one_step_equations"
    assert active_manager.has_attempted_skill("one_step_equations")
    assert (await _stored(memory_store, session.session_id)).current_screen == SessionScreen.FORK


@pytest.mark.unit
@pytest.mark.asyncio
async def test_branch_rejects_repeat_and_depth_limit(active_manager):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")
    with pytest.raises(InvalidStateError):
        await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")

    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    assert not active_manager.can_branch_deeper()
    with pytest.raises(InvalidStateError):
        await active_manager.branch_to_skill("basic_arithmetic", "Basic Arithmetic")

    # A rejected mutation leaves the snapshot untouched
    assert active_manager.depth == 2
    assert active_manager.session.branch_history == ["one_step_equations", "inverse_operations"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_practice_requires_branch_and_problems(active_manager):
    with pytest.raises(InvalidStateError):
        await active_manager.start_practice(PROBLEMS)

    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    with pytest.raises(InvalidStateError):
        await active_manager.start_practice([])

    session = await active_manager.start_practice(PROBLEMS)
    assert session.current_screen == SessionScreen.PRACTICE
    assert session.skill_stack[-1].current_problem_index == 0
    assert len(session.skill_stack[-1].problems) == 3


# === Practice progress ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_practice_to_mastery(active_manager, memory_store):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)

    await _practice(active_manager, [True, True])
    assert active_manager.session.current_screen == SessionScreen.PRACTICE
    assert active_manager.current_branch.current_problem_index == 2

    await _practice(active_manager, [False])
    session = active_manager.session
    branch = session.skill_stack[-1]

    assert session.current_screen == SessionScreen.MASTERED
    assert branch.mastered is True
    assert branch.completed_at is not None
    assert branch.success_count == 2
    assert [a.problem_index for a in branch.attempts] == [0, 1, 2]
    assert session.total_problems_attempted == 3
    assert session.total_correct_answers == 2

    # Completion is written immediately
    stored = await _stored(memory_store, session.session_id)
    assert stored.current_screen == SessionScreen.MASTERED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_practice_below_threshold_is_not_mastered(active_manager):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await _practice(active_manager, [True, False, False])

    assert active_manager.session.current_screen == SessionScreen.MASTERED
    assert active_manager.current_branch.mastered is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_no_attempts_past_the_last_problem(active_manager):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await _practice(active_manager, [True, True, True])

    with pytest.raises(InvalidStateError):
        await active_manager.record_problem_attempt("5", True)
    with pytest.raises(InvalidStateError):
        await active_manager.next_problem()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_submit_answer_records_and_advances(active_manager, memory_store):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)

    session = await active_manager.submit_answer("5", True)
    branch = session.skill_stack[-1]
    assert branch.current_problem_index == 1
    assert [(a.problem_index, a.answer) for a in branch.attempts] == [(0, "5")]

    await active_manager.submit_answer("9", False)
    session = await active_manager.submit_answer("4", True)
    assert session.current_screen == SessionScreen.MASTERED
    assert session.skill_stack[-1].mastered is True
    assert (await _stored(memory_store, session.session_id)).current_screen == SessionScreen.MASTERED

    with pytest.raises(InvalidStateError):
        await active_manager.submit_answer("1", True)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_submit_answer_leaves_no_partial_attempt(active_manager):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await active_manager.submit_answer("5", True)
    await active_manager.submit_answer("9", True)

    # The last answer finishes the set, so its write is immediate and can fail
    active_manager.store.set = AsyncMock(side_effect=RuntimeError("store offline"))
    with pytest.raises(UpstreamError):
        await active_manager.submit_answer("4", True)

    branch = active_manager.current_branch
    assert branch.current_problem_index == 2
    assert len(branch.attempts) == 2
    assert active_manager.session.total_problems_attempted == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_complete_current_branch(active_manager):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    session = await active_manager.complete_current_branch()

    assert session.current_screen == SessionScreen.MASTERED
    assert session.skill_stack[-1].mastered is True
    assert session.skill_stack[-1].completed_at is not None


# === Returning ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_return_to_main_problem(active_manager):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await _practice(active_manager, [True, True, False])

    session = await active_manager.return_to_parent()

    assert session.skill_stack == []
    assert session.current_screen == SessionScreen.DIAGNOSIS
    assert session.branch_history == ["inverse_operations"]
    assert session.messages[-1].role == MessageRole.ASSISTANT
    assert session.messages[-1].content == (
        "Great! You mastered Inverse Operations (67% correct). "
        "Now let's apply it to your original problem: Solve 2x + 3 = 11"
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_return_to_parent_branch(active_manager):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")

    session = await active_manager.return_to_parent()

    assert active_manager.depth == 1
    assert session.current_screen == SessionScreen.PRACTICE
    assert session.messages[-1].content == (
        "Excellent! Now that you understand Inverse Operations, let's continue with "
        "One-Step Equations. You got 0% correct - great progress!"
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_return_without_branch(active_manager):
    with pytest.raises(InvalidStateError):
        await active_manager.return_to_parent()


# === Messages and debounced progress ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_message_is_written_immediately(active_manager, memory_store):
    message = await active_manager.add_message(MessageRole.USER, "I think x is 4")

    stored = await _stored(memory_store, active_manager.session.session_id)
    assert stored.messages[-1] == message
    assert len(stored.messages) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_message_failure_propagates(active_manager):
    active_manager.store.set = AsyncMock(side_effect=RuntimeError("store offline"))
    before = active_manager.session

    with pytest.raises(UpstreamError):
        await active_manager.add_message(MessageRole.USER, "hello?")
    # Snapshot only swaps after a successful write
    assert active_manager.session is before


@pytest.mark.unit
@pytest.mark.asyncio
async def test_debounced_progress_lands_later(active_manager, memory_store):
    session_id = active_manager.session.session_id
    await active_manager.update_session_progress(total_correct_answers=4)

    assert active_manager.session.total_correct_answers == 4
    assert (await _stored(memory_store, session_id)).total_correct_answers == 0

    await asyncio.sleep(0.15)
    assert (await _stored(memory_store, session_id)).total_correct_answers == 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_flush_writes_pending_progress(active_manager, memory_store):
    await active_manager.update_current_screen(SessionScreen.PRACTICE)
    assert await active_manager.flush() is True

    stored = await _stored(memory_store, active_manager.session.session_id)
    assert stored.current_screen == SessionScreen.PRACTICE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_immediate_write_carries_pending_progress(active_manager, memory_store):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await active_manager.record_problem_attempt("5", True)
    await active_manager.add_message(MessageRole.USER, "got it")

    stored = await _stored(memory_store, active_manager.session.session_id)
    assert stored.total_problems_attempted == 1
    assert stored.skill_stack[-1].attempts[0].answer == "5"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finishing_the_set_is_written_immediately(active_manager, memory_store):
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    await _practice(active_manager, [True])
    await active_manager.record_problem_attempt("9", True)

    # Both calls queue on the lock before either advances the index
    async with active_manager._lock:
        tasks = [asyncio.create_task(active_manager.next_problem()) for _ in range(2)]
        await asyncio.sleep(0)
    await asyncio.gather(*tasks)

    stored = await _stored(memory_store, active_manager.session.session_id)
    assert stored.current_screen == SessionScreen.MASTERED
    assert stored.skill_stack[-1].mastered is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_progress_rejects_unknown_fields(active_manager):
    with pytest.raises(InvalidStateError):
        await active_manager.update_session_progress(user_id="mallory")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_messages_are_not_lost(active_manager, memory_store):
    await asyncio.gather(
        *(active_manager.add_message(MessageRole.USER, f"message {i}") for i in range(5))
    )

    contents = [m.content for m in active_manager.session.messages[1:]]
    assert sorted(contents) == [f"message {i}" for i in range(5)]
    stored = await _stored(memory_store, active_manager.session.session_id)
    assert len(stored.messages) == 6


# === Pause and recovery ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pause_and_clear_session(active_manager, memory_store):
    session_id = active_manager.session.session_id
    await active_manager.add_message(MessageRole.USER, "brb")
    await active_manager.update_session_progress(total_problems_attempted=2)

    await active_manager.pause_and_clear_session()

    assert active_manager.session is None
    stored = await _stored(memory_store, session_id)
    assert stored.status == SessionStatus.PAUSED
    assert stored.messages[-1].content == "brb"
    assert stored.total_problems_attempted == 2
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") == {"session_id": session_id}

    # No stale debounced write lands afterwards
    await asyncio.sleep(0.1)
    assert (await _stored(memory_store, session_id)).status == SessionStatus.PAUSED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pause_swallows_store_failures(active_manager):
    active_manager.store.set = AsyncMock(side_effect=RuntimeError("store offline"))

    await active_manager.pause_and_clear_session()
    assert active_manager.session is None

    # Nothing to pause is a no-op
    await active_manager.pause_and_clear_session()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_recover_and_resume(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id
    await active_manager.pause_and_clear_session()

    clock.advance(minutes=10)
    returning = _new_manager(memory_store, clock)
    recoverable = await returning.check_for_recoverable_session()

    assert recoverable.session_id == session_id
    assert returning.recoverable_session.session_id == session_id

    resumed = await returning.resume_session()
    assert resumed.status == SessionStatus.ACTIVE
    assert returning.session.session_id == session_id
    assert returning.recoverable_session is None
    assert (await _stored(memory_store, session_id)).status == SessionStatus.ACTIVE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stale_session_is_abandoned(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id
    await active_manager.pause_and_clear_session()

    clock.advance(hours=2)
    returning = _new_manager(memory_store, clock)

    assert await returning.check_for_recoverable_session() is None
    assert (await _stored(memory_store, session_id)).status == SessionStatus.ABANDONED
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_completed_session_is_not_recoverable(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id
    await active_manager.end_session()
    # Simulate a remembered id surviving from another device
    await memory_store.set(ACTIVE_SESSIONS_COLLECTION, "alice", {"session_id": session_id})

    assert await _new_manager(memory_store, clock).check_for_recoverable_session() is None
    assert (await _stored(memory_store, session_id)).status == SessionStatus.COMPLETED
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remembered_session_of_other_user_is_cleared(memory_store, clock):
    await memory_store.set(ACTIVE_SESSIONS_COLLECTION, "alice", {"session_id": "session_bob_1"})

    assert await _new_manager(memory_store, clock).check_for_recoverable_session() is None
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_remembered_session_is_cleared(memory_store, clock):
    await memory_store.set(ACTIVE_SESSIONS_COLLECTION, "alice", {"session_id": "session_alice_1"})

    assert await _new_manager(memory_store, clock).check_for_recoverable_session() is None
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_recovery_check_swallows_store_failures(memory_store, clock):
    manager = _new_manager(memory_store, clock)
    memory_store.get = AsyncMock(side_effect=UpstreamError("store offline"))

    assert await manager.check_for_recoverable_session() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_decline_session(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id
    await active_manager.pause_and_clear_session()

    returning = _new_manager(memory_store, clock)
    await returning.check_for_recoverable_session()
    await returning.decline_session()

    assert (await _stored(memory_store, session_id)).status == SessionStatus.ABANDONED
    assert returning.recoverable_session is None
    assert await memory_store.get(ACTIVE_SESSIONS_COLLECTION, "alice") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_decline_other_users_session(active_manager, memory_store, clock):
    session_id = active_manager.session.session_id

    with pytest.raises(UnauthorizedError):
        await _new_manager(memory_store, clock, "bob").decline_session(session_id)
    assert (await _stored(memory_store, session_id)).status == SessionStatus.ACTIVE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resume_without_recoverable_session(manager):
    with pytest.raises(InvalidStateError):
        await manager.resume_session()


# === Serialization ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_document_round_trip_keeps_stack_and_order(active_manager):
    await active_manager.branch_to_skill("one_step_equations", "One-Step Equations")
    await active_manager.branch_to_skill("inverse_operations", "Inverse Operations")
    await active_manager.start_practice(PROBLEMS)
    for text in ("first", "second", "third"):
        await active_manager.add_message(MessageRole.USER, text)

    session = active_manager.session
    restored = document_to_session(session_to_document(session))

    assert restored == session
    assert [b.skill_id for b in restored.skill_stack] == ["one_step_equations", "inverse_operations"]
    assert [m.content for m in restored.messages][-3:] == ["first", "second", "third"]


@pytest.mark.unit
def test_malformed_document_is_upstream_error():
    with pytest.raises(UpstreamError):
        document_to_session({"session_id": "s1"})


# === Registry and sweep ===


@pytest.mark.unit
@pytest.mark.asyncio
async def test_registry(memory_store, clock):
    registry = SessionRegistry(memory_store, debounce_seconds=10, clock=clock)

    alice = registry.get("alice")
    assert registry.get("alice") is alice
    assert registry.get("bob") is not alice
    assert registry.active_count() == 0

    await alice.create_session("Solve 3x = 12")
    await alice.update_session_progress(total_correct_answers=1)
    assert registry.active_count() == 1

    await registry.flush_all()
    stored = await _stored(memory_store, alice.session.session_id)
    assert stored.total_correct_answers == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cleanup_abandoned_sessions(memory_store, clock):
    old = await _new_manager(memory_store, clock, "alice").create_session("Old problem")
    finished_manager = _new_manager(memory_store, clock, "carol")
    await finished_manager.create_session("Finished problem")
    await finished_manager.end_session()
    await memory_store.set(SESSIONS_COLLECTION, "broken", {"status": "active"})

    clock.advance(hours=30)
    fresh = await _new_manager(memory_store, clock, "bob").create_session("New problem")

    preview = await cleanup_abandoned_sessions(memory_store, 24, dry_run=True, now=clock())
    assert preview == [old.session_id]
    assert (await _stored(memory_store, old.session_id)).status == SessionStatus.ACTIVE

    marked = await cleanup_abandoned_sessions(memory_store, 24, now=clock())
    assert marked == [old.session_id]
    assert (await _stored(memory_store, old.session_id)).status == SessionStatus.ABANDONED
    assert (await _stored(memory_store, fresh.session_id)).status == SessionStatus.ACTIVE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_and_stop_cleanup(memory_store):
    task = session_service.start_cleanup(memory_store)
    assert not task.done()

    session_service.stop_cleanup()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert session_service.cleanup_task is None
