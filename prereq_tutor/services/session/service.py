import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from prereq_tutor.config import Config
from prereq_tutor.errors import (
    InvalidStateError,
    NotFoundError,
    TutorError,
    UnauthorizedError,
    UpstreamError,
)
from prereq_tutor.logging_utils import StructuredLogger
from prereq_tutor.metrics import (
    tutor_active_sessions,
    tutor_session_operations_total,
    tutor_sessions_abandoned_total,
)
from prereq_tutor.models.schemas import (
    ConversationMessage,
    MainProblem,
    MessageRole,
    PracticeProblem,
    ProblemAttempt,
    SessionScreen,
    SessionStatus,
    SkillBranch,
    TutoringSession,
    utc_now,
)
from prereq_tutor.services.session.persistence import (
    DebouncedWrite,
    ImmediateWrite,
    SessionWriter,
    WritePolicy,
)
from prereq_tutor.services.session.store import SERVER_TIMESTAMP, Document, DocumentStore

SESSIONS_COLLECTION = "sessions"
ACTIVE_SESSIONS_COLLECTION = "active_sessions"
RESUMABLE_STATUSES = (SessionStatus.ACTIVE.value, SessionStatus.PAUSED.value)

# Fields a caller may set through update_session_progress
PROGRESS_FIELDS = frozenset(
    {"current_screen", "total_problems_attempted", "total_correct_answers"}
)

logger = StructuredLogger("session")
_datetime_adapter = TypeAdapter(datetime)
cleanup_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]


# === Serialization ===


def session_to_document(session: TutoringSession) -> Document:
    return session.model_dump(mode="json")


def document_to_session(document: Document) -> TutoringSession:
    try:
        return TutoringSession.model_validate(document)
    except ValidationError as e:
        raise UpstreamError(f"Stored session is malformed: {e}") from e


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _success_percent(branch: SkillBranch) -> int:
    if not branch.problems:
        return 0
    # Round half up
    return math.floor(branch.success_count / len(branch.problems) * 100 + 0.5)


class SessionManager:
    """
    Per-learner tutoring session state machine.

    Screens move diagnosis -> fork -> practice -> mastered and then back to
    practice (parent branch) or diagnosis (main problem). Every mutation
    works on a copy of the latest snapshot and swaps it in only after the
    write has been issued, so concurrent callers never overwrite each other.
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        max_depth: int = Config.BRANCHING.MAX_DEPTH,
        mastery_threshold: float = Config.BRANCHING.MASTERY_THRESHOLD,
        debounce_seconds: float = Config.SESSION.DEBOUNCE_SECONDS,
        recovery_window_seconds: int = Config.SESSION.RECOVERY_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.user_id = user_id
        self.max_depth = max_depth
        self.mastery_threshold = mastery_threshold
        self.recovery_window = timedelta(seconds=recovery_window_seconds)
        self._progress_policy = DebouncedWrite(debounce_seconds)
        self._clock = clock
        self._writer = SessionWriter(store, SESSIONS_COLLECTION)
        self._lock = asyncio.Lock()
        self._session: Optional[TutoringSession] = None
        self._recoverable: Optional[TutoringSession] = None

    # ==================== Queries ====================

    @property
    def session(self) -> Optional[TutoringSession]:
        """Latest in-memory snapshot. Treat as read-only."""
        return self._session

    @property
    def recoverable_session(self) -> Optional[TutoringSession]:
        return self._recoverable

    @property
    def current_branch(self) -> Optional[SkillBranch]:
        if self._session is None or not self._session.skill_stack:
            return None
        return self._session.skill_stack[-1]

    @property
    def depth(self) -> int:
        return len(self._session.skill_stack) if self._session else 0

    def can_branch_deeper(self) -> bool:
        return self.depth < self.max_depth

    def has_attempted_skill(self, skill_id: str) -> bool:
        return self._session is not None and skill_id in self._session.branch_history

    def require_session(self) -> TutoringSession:
        if self._session is None:
            raise InvalidStateError("No active session")
        return self._session

    # ==================== Persistence Helpers ====================

    async def _persist(self, session: TutoringSession, policy: WritePolicy) -> None:
        await self._writer.write(session.session_id, session_to_document(session), policy)

    async def _mutate(
        self,
        operation: str,
        apply: Callable[[TutoringSession], Optional[WritePolicy]],
        policy: Optional[WritePolicy] = None,
        request_id: Optional[str] = None,
    ) -> TutoringSession:
        """
        Run `apply` on a copy of the session and persist the copy before swapping it in.

        `apply` may return a write policy that overrides `policy`.
        """
        async with self._lock:
            updated = self.require_session().model_copy(deep=True)
            override = apply(updated)
            updated.last_message_at = self._clock()
            await self._persist(updated, override or policy or ImmediateWrite())
            self._session = updated

        tutor_session_operations_total.labels(operation=operation).inc()
        logger.info(
            f"Session {operation.replace('_', ' ')}",
            context={
                "session_id": updated.session_id,
                "screen": updated.current_screen.value,
                "depth": len(updated.skill_stack),
            },
            request_id=request_id,
        )
        return updated

    async def _remember(self, session_id: str) -> None:
        await self.store.set(
            ACTIVE_SESSIONS_COLLECTION, self.user_id, {"session_id": session_id}
        )

    async def _forget(self) -> None:
        await self.store.delete(ACTIVE_SESSIONS_COLLECTION, self.user_id)

    async def flush(self) -> bool:
        """Write any pending debounced progress right away."""
        return await self._writer.flush()

    # ==================== Lifecycle ====================

    async def create_session(
        self,
        problem_text: str,
        problem_latex: Optional[str] = None,
        initial_message: Optional[str] = None,
        main_skill_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> TutoringSession:
        now = self._clock()
        session = TutoringSession(
            session_id=f"session_{self.user_id}_{int(now.timestamp() * 1000)}",
            user_id=self.user_id,
            main_problem=MainProblem(text=problem_text, latex=problem_latex),
            main_skill_id=main_skill_id,
            messages=(
                [ConversationMessage(role=MessageRole.ASSISTANT, content=initial_message, timestamp=now)]
                if initial_message
                else []
            ),
            created_at=now,
            last_message_at=now,
        )

        async with self._lock:
            had_session = self._session is not None
            await self._writer.flush()
            await self._persist(session, ImmediateWrite())
            self._session = session
            self._recoverable = None
            await self._remember(session.session_id)

        if not had_session:
            tutor_active_sessions.inc()
        tutor_session_operations_total.labels(operation="create").inc()
        logger.info(
            "Session created",
            context={
                "session_id": session.session_id,
                "main_skill_id": main_skill_id,
                "has_initial_message": bool(initial_message),
            },
            request_id=request_id,
        )
        return session

    async def _fetch_owned(self, session_id: str) -> TutoringSession:
        document = await self.store.get(SESSIONS_COLLECTION, session_id)
        if document is None:
            raise NotFoundError(f"Session not found: {session_id}")
        session = document_to_session(document)
        if session.user_id != self.user_id:
            raise UnauthorizedError("Session belongs to another user")
        return session

    async def load_session(
        self, session_id: str, request_id: Optional[str] = None
    ) -> TutoringSession:
        if self._session is not None and self._session.session_id == session_id:
            return self._session

        session = await self._fetch_owned(session_id)
        async with self._lock:
            had_session = self._session is not None
            await self._writer.flush()
            self._session = session
            await self._remember(session_id)

        if not had_session:
            tutor_active_sessions.inc()
        tutor_session_operations_total.labels(operation="load").inc()
        logger.info(
            "Session loaded",
            context={"session_id": session_id, "status": session.status.value},
            request_id=request_id,
        )
        return session

    async def end_session(self, request_id: Optional[str] = None) -> TutoringSession:
        def apply(s: TutoringSession) -> None:
            s.status = SessionStatus.COMPLETED
            s.current_screen = SessionScreen.COMPLETED
            s.completed_at = self._clock()

        session = await self._mutate("end", apply, request_id=request_id)
        await self._forget()
        return session

    async def pause_and_clear_session(self, request_id: Optional[str] = None) -> None:
        """
        Best-effort flush of status=paused and the full message log, then
        drop the in-memory session. Failures are logged, never raised.
        """
        session = self._session
        if session is None:
            return

        try:
            async with self._lock:
                snapshot = self._session.model_copy(deep=True)
                if snapshot.status == SessionStatus.ACTIVE:
                    snapshot.status = SessionStatus.PAUSED
                snapshot.last_message_at = self._clock()
                # Supersedes any pending debounced write
                await self._persist(snapshot, ImmediateWrite())
            tutor_session_operations_total.labels(operation="pause").inc()
            logger.info(
                "Session paused",
                context={"session_id": session.session_id, "messages": len(snapshot.messages)},
                request_id=request_id,
            )
        except Exception as e:
            logger.error(
                "Error pausing session",
                context={
                    "session_id": session.session_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                request_id=request_id,
            )
        finally:
            self._writer.cancel_pending()
            self._session = None
            tutor_active_sessions.dec()

    # ==================== Recovery ====================

    async def check_for_recoverable_session(
        self, request_id: Optional[str] = None
    ) -> Optional[TutoringSession]:
        """
        Surface the learner's remembered session if it can be resumed.

        A session is recoverable when it belongs to this learner, is active
        or paused, and had activity within the recovery window. A stale
        session is marked abandoned instead.
        """
        self._recoverable = None
        try:
            remembered = await self.store.get(ACTIVE_SESSIONS_COLLECTION, self.user_id)
            session_id = (remembered or {}).get("session_id")
            if not session_id:
                return None

            # Session ids embed the owner: session_{user_id}_{ms}
            if self.user_id not in session_id:
                logger.info(
                    "Clearing remembered session from different user",
                    context={"session_id": session_id},
                    request_id=request_id,
                )
                await self._forget()
                return None

            document = await self.store.get(SESSIONS_COLLECTION, session_id)
            if document is None:
                await self._forget()
                return None

            session = document_to_session(document)
            idle = self._clock() - _as_utc(session.last_message_at)
            resumable = session.status.value in RESUMABLE_STATUSES

            if session.user_id == self.user_id and resumable and idle < self.recovery_window:
                self._recoverable = session
                logger.info(
                    "Found recoverable session",
                    context={"session_id": session_id, "idle_seconds": int(idle.total_seconds())},
                    request_id=request_id,
                )
                return session

            if resumable and idle >= self.recovery_window:
                await self.store.merge(
                    SESSIONS_COLLECTION,
                    session_id,
                    {"status": SessionStatus.ABANDONED.value, "last_message_at": SERVER_TIMESTAMP},
                )
                tutor_sessions_abandoned_total.labels(source="recovery").inc()
                logger.info(
                    "Stale session marked abandoned",
                    context={"session_id": session_id},
                    request_id=request_id,
                )
            await self._forget()
        except Exception as e:
            logger.error(
                "Error checking for recoverable session",
                context={"error": str(e), "error_type": type(e).__name__},
                request_id=request_id,
            )
            try:
                await self._forget()
            except Exception as forget_error:
                logger.warning(
                    "Could not clear remembered session",
                    context={"error": str(forget_error)},
                    request_id=request_id,
                )
        return None

    async def resume_session(
        self, session_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> TutoringSession:
        target = self._recoverable
        if target is None or (session_id and target.session_id != session_id):
            if not session_id:
                raise InvalidStateError("No recoverable session")
            target = await self._fetch_owned(session_id)

        resumed = target.model_copy(deep=True)
        resumed.status = SessionStatus.ACTIVE
        resumed.last_message_at = self._clock()

        async with self._lock:
            had_session = self._session is not None
            await self._writer.flush()
            await self._persist(resumed, ImmediateWrite())
            self._session = resumed
            self._recoverable = None
            await self._remember(resumed.session_id)

        if not had_session:
            tutor_active_sessions.inc()
        tutor_session_operations_total.labels(operation="resume").inc()
        logger.info(
            "Session resumed",
            context={"session_id": resumed.session_id},
            request_id=request_id,
        )
        return resumed

    async def decline_session(
        self, session_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> None:
        """Mark the recoverable session abandoned. Always clears the remembered id."""
        target_id = session_id or (self._recoverable.session_id if self._recoverable else None)
        if target_id is None:
            return

        try:
            await self._fetch_owned(target_id)
            await self.store.merge(
                SESSIONS_COLLECTION,
                target_id,
                {"status": SessionStatus.ABANDONED.value, "last_message_at": SERVER_TIMESTAMP},
            )
            tutor_sessions_abandoned_total.labels(source="decline").inc()
            logger.info("Session declined", context={"session_id": target_id}, request_id=request_id)
        except UnauthorizedError:
            raise
        except TutorError as e:
            logger.error(
                "Error declining session",
                context={"session_id": target_id, "error": str(e)},
                request_id=request_id,
            )
        finally:
            self._recoverable = None
            await self._forget()

    # ==================== Branching ====================

    async def branch_to_skill(
        self,
        skill_id: str,
        skill_name: str,
        skill_description: str = "",
        request_id: Optional[str] = None,
    ) -> TutoringSession:
        def apply(s: TutoringSession) -> None:
            if skill_id in s.branch_history:
                raise InvalidStateError(f"Skill already practiced in this session: {skill_id}")
            if len(s.skill_stack) >= self.max_depth:
                raise InvalidStateError(f"Maximum branching depth ({self.max_depth}) reached")
            s.skill_stack.append(
                SkillBranch(
                    skill_id=skill_id,
                    skill_name=skill_name,
                    skill_description=skill_description,
                    started_at=self._clock(),
                )
            )
            s.branch_history.append(skill_id)
            s.current_screen = SessionScreen.FORK

        return await self._mutate("branch", apply, request_id=request_id)

    async def start_practice(
        self, problems: Sequence[PracticeProblem], request_id: Optional[str] = None
    ) -> TutoringSession:
        def apply(s: TutoringSession) -> None:
            if not s.skill_stack:
                raise InvalidStateError("No active skill branch")
            if not problems:
                raise InvalidStateError("Practice needs at least one problem")
            branch = s.skill_stack[-1]
            branch.problems = [p.model_copy() for p in problems]
            branch.current_problem_index = 0
            s.current_screen = SessionScreen.PRACTICE

        return await self._mutate("start_practice", apply, request_id=request_id)

    def _apply_attempt(self, s: TutoringSession, answer: str, correct: bool) -> None:
        if not s.skill_stack:
            raise InvalidStateError("No active skill branch")
        branch = s.skill_stack[-1]
        if branch.current_problem_index >= len(branch.problems):
            raise InvalidStateError("No practice problem awaiting an answer")
        branch.attempts.append(
            ProblemAttempt(
                problem_index=branch.current_problem_index,
                answer=answer,
                correct=correct,
                timestamp=self._clock(),
            )
        )
        s.total_problems_attempted += 1
        if correct:
            branch.success_count += 1
            s.total_correct_answers += 1

    def _apply_advance(self, s: TutoringSession) -> bool:
        """Move to the next problem. Returns True when this finished the set."""
        if not s.skill_stack:
            raise InvalidStateError("No active skill branch")
        branch = s.skill_stack[-1]
        if branch.current_problem_index >= len(branch.problems):
            raise InvalidStateError("Practice set already finished")

        branch.current_problem_index += 1
        if branch.current_problem_index < len(branch.problems):
            return False

        success_rate = branch.success_count / len(branch.problems)
        branch.mastered = success_rate >= self.mastery_threshold
        branch.completed_at = self._clock()
        s.current_screen = SessionScreen.MASTERED
        return True

    def _log_branch_completed(self, session: TutoringSession, request_id: Optional[str]) -> None:
        branch = session.skill_stack[-1]
        logger.info(
            "Skill branch completed",
            context={
                "skill_id": branch.skill_id,
                "success_count": branch.success_count,
                "problems": len(branch.problems),
                "mastered": branch.mastered,
            },
            request_id=request_id,
        )

    async def record_problem_attempt(
        self, answer: str, correct: bool, request_id: Optional[str] = None
    ) -> TutoringSession:
        def apply(s: TutoringSession) -> None:
            self._apply_attempt(s, answer, correct)

        return await self._mutate(
            "record_attempt", apply, self._progress_policy, request_id=request_id
        )

    async def next_problem(self, request_id: Optional[str] = None) -> TutoringSession:
        """Advance to the next problem; completes the branch after the last one."""
        completed = False

        def apply(s: TutoringSession) -> Optional[WritePolicy]:
            nonlocal completed
            completed = self._apply_advance(s)
            # Completion changes the screen, so it is written immediately
            return ImmediateWrite() if completed else None

        session = await self._mutate(
            "next_problem", apply, self._progress_policy, request_id=request_id
        )
        if completed:
            self._log_branch_completed(session, request_id)
        return session

    async def submit_answer(
        self, answer: str, correct: bool, request_id: Optional[str] = None
    ) -> TutoringSession:
        """
        Record an answer to the current problem and advance past it in one step.

        Either both changes are applied and persisted or neither is, so a
        retried submission never counts twice against the same problem.
        """
        completed = False

        def apply(s: TutoringSession) -> Optional[WritePolicy]:
            nonlocal completed
            self._apply_attempt(s, answer, correct)
            completed = self._apply_advance(s)
            return ImmediateWrite() if completed else None

        session = await self._mutate(
            "submit_answer", apply, self._progress_policy, request_id=request_id
        )
        if completed:
            self._log_branch_completed(session, request_id)
        return session

    async def complete_current_branch(self, request_id: Optional[str] = None) -> TutoringSession:
        def apply(s: TutoringSession) -> None:
            if not s.skill_stack:
                raise InvalidStateError("No active skill branch")
            branch = s.skill_stack[-1]
            branch.mastered = True
            branch.completed_at = self._clock()
            s.current_screen = SessionScreen.MASTERED

        return await self._mutate("complete_branch", apply, request_id=request_id)

    async def return_to_parent(self, request_id: Optional[str] = None) -> TutoringSession:
        """
        Pop the finished branch and resume whatever triggered it.

        Appends a transition message naming the completed skill and its
        success percentage. Returns to the parent branch's practice when one
        remains, otherwise to diagnosis on the main problem.
        """

        def apply(s: TutoringSession) -> None:
            if not s.skill_stack:
                raise InvalidStateError("No skill branch to return from")
            completed = s.skill_stack.pop()
            percent = _success_percent(completed)

            if s.skill_stack:
                parent = s.skill_stack[-1]
                s.current_screen = SessionScreen.PRACTICE
                content = (
                    f"Excellent! Now that you understand {completed.skill_name}, "
                    f"let's continue with {parent.skill_name}. "
                    f"You got {percent}% correct - great progress!"
                )
            else:
                s.current_screen = SessionScreen.DIAGNOSIS
                content = (
                    f"Great! You mastered {completed.skill_name} ({percent}% correct). "
                    f"Now let's apply it to your original problem: {s.main_problem.text}"
                )
            s.messages.append(
                ConversationMessage(
                    role=MessageRole.ASSISTANT, content=content, timestamp=self._clock()
                )
            )

        return await self._mutate("return_to_parent", apply, request_id=request_id)

    # ==================== Messages & Progress ====================

    async def add_message(
        self,
        role: MessageRole,
        content: str,
        request_id: Optional[str] = None,
    ) -> ConversationMessage:
        """Append to the message log. Always written immediately; failures propagate."""
        message = ConversationMessage(role=role, content=content, timestamp=self._clock())

        def apply(s: TutoringSession) -> None:
            s.messages.append(message)

        await self._mutate("add_message", apply, ImmediateWrite(), request_id=request_id)
        return message

    async def update_session_progress(
        self, request_id: Optional[str] = None, **fields: Any
    ) -> TutoringSession:
        unknown = set(fields) - PROGRESS_FIELDS
        if unknown:
            raise InvalidStateError(f"Cannot update session field(s): {sorted(unknown)}")

        def apply(s: TutoringSession) -> None:
            for name, value in fields.items():
                if name == "current_screen":
                    value = SessionScreen(value)
                setattr(s, name, value)

        return await self._mutate(
            "update_progress", apply, self._progress_policy, request_id=request_id
        )

    async def update_current_screen(
        self, screen: SessionScreen, request_id: Optional[str] = None
    ) -> TutoringSession:
        return await self.update_session_progress(request_id=request_id, current_screen=screen)


class SessionRegistry:
    """Holds one SessionManager per learner."""

    def __init__(self, store: DocumentStore, **manager_options: Any):
        self.store = store
        self._manager_options = manager_options
        self._managers: dict[str, SessionManager] = {}

    def get(self, user_id: str) -> SessionManager:
        manager = self._managers.get(user_id)
        if manager is None:
            manager = SessionManager(self.store, user_id, **self._manager_options)
            self._managers[user_id] = manager
        return manager

    def active_count(self) -> int:
        return sum(1 for m in self._managers.values() if m.session is not None)

    async def flush_all(self) -> None:
        for manager in self._managers.values():
            try:
                await manager.flush()
            except TutorError as e:
                logger.error(
                    "Failed to flush session on shutdown",
                    context={"user_id": manager.user_id, "error": str(e)},
                )


# === Abandoned Session Sweep ===


async def cleanup_abandoned_sessions(
    store: DocumentStore,
    older_than_hours: float = Config.SESSION.ABANDON_AFTER_HOURS,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> list[str]:
    """Mark active/paused sessions with no activity for `older_than_hours` as abandoned."""
    cutoff = (now or utc_now()) - timedelta(hours=older_than_hours)
    candidates = await store.query(SESSIONS_COLLECTION, "status", RESUMABLE_STATUSES)

    stale: list[str] = []
    for session_id, document in candidates:
        try:
            last_activity = _as_utc(
                _datetime_adapter.validate_python(document["last_message_at"])
            )
        except (KeyError, ValidationError):
            logger.warning(
                "Session without valid last activity",
                context={"session_id": session_id},
            )
            continue
        if last_activity < cutoff:
            stale.append(session_id)

    if not dry_run:
        for session_id in stale:
            await store.merge(
                SESSIONS_COLLECTION,
                session_id,
                {"status": SessionStatus.ABANDONED.value, "last_message_at": SERVER_TIMESTAMP},
            )
            tutor_sessions_abandoned_total.labels(source="sweep").inc()

    logger.info(
        "Abandoned session sweep finished",
        context={
            "checked": len(candidates),
            "stale": len(stale),
            "dry_run": dry_run,
            "older_than_hours": older_than_hours,
        },
    )
    return stale


async def _periodic_cleanup(store: DocumentStore) -> None:
    while True:
        await asyncio.sleep(Config.SESSION.CLEANUP_INTERVAL_SECONDS)
        try:
            await cleanup_abandoned_sessions(store)
        except TutorError as e:
            logger.error("Abandoned session sweep failed", context={"error": str(e)})


def start_cleanup(store: DocumentStore) -> asyncio.Task:  # type: ignore[type-arg]
    """Start the background sweep. Call from lifespan."""
    global cleanup_task
    cleanup_task = asyncio.create_task(_periodic_cleanup(store))
    return cleanup_task


def stop_cleanup() -> None:
    """Stop the background sweep. Call from lifespan."""
    global cleanup_task
    if cleanup_task:
        cleanup_task.cancel()
        cleanup_task = None
