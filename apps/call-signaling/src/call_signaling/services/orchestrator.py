"""Outbound Call Orchestrator: ring ranked candidates one at a time.

The caller sees exactly one outcome per run: a connected call, nobody
available, an error, or their own cancellation. Individual candidates
declining, timing out or failing to be created are handled internally by
moving on to the next candidate.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from call_signaling.clients.availability_client import AvailabilitySource
from call_signaling.clients.media_transport import MediaTransport
from call_signaling.config import Settings, get_settings
from call_signaling.models.call import CallRecord, CallStatus, CallType, Participant
from call_signaling.models.candidate import Candidate
from call_signaling.services.ranking import rank_candidates
from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.store.base import Subscription
from call_signaling.utils.errors import (
    ExternalServiceError,
    InvalidTransitionError,
    NoCandidatesAvailableError,
    SignalingException,
    SubscriptionLostError,
    ValidationError,
)
from call_signaling.utils.logging import call_context, get_logger, log_error

logger = get_logger("orchestrator")


class OrchestratorState(str, Enum):
    """Caller-side state of an instant-call run."""

    IDLE = "idle"
    SEARCHING = "searching"
    CALLING = "calling"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    NO_THERAPISTS = "no_therapists"
    ERROR = "error"
    CANCELLED = "cancelled"


RETRYABLE_STATES = frozenset({OrchestratorState.NO_THERAPISTS, OrchestratorState.ERROR})


class _Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    LOST = "lost"
    USER_CANCELLED = "user_cancelled"


StateObserver = Callable[[OrchestratorState], Awaitable[None]]


class OutboundCallOrchestrator:
    """Caller-side state machine for one instant-call request.

    Candidates are rung strictly in ranked order, one record per attempt and
    never two attempts at once. Each attempt races the record's terminal
    status against the ring timeout and the user's cancel.
    """

    def __init__(
        self,
        signaling: CallSignalingService,
        availability: AvailabilitySource,
        media_transport: MediaTransport,
        caller: Participant,
        preference: Optional[str] = None,
        ring_timeout: Optional[float] = None,
        on_state_change: Optional[StateObserver] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.signaling = signaling
        self.availability = availability
        self.media_transport = media_transport
        self.caller = caller
        self.preference = preference
        self.ring_timeout = ring_timeout if ring_timeout is not None else settings.ring_timeout_seconds
        self._on_state_change = on_state_change

        self.state = OrchestratorState.IDLE
        self.current_call: Optional[CallRecord] = None
        self.connected_call: Optional[CallRecord] = None
        self.media_handle: Any = None
        self.attempted: List[str] = []
        # Why the last run ended in no_therapists or error
        self.last_error: Optional[SignalingException] = None

        self._cancel_requested = asyncio.Event()
        self._running = False
        # Cancels of calls whose creation finished after the user left
        self._cleanup_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    async def _set_state(self, state: OrchestratorState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.info(
            f"Orchestrator state {previous.value} -> {state.value}",
            extra={"caller_id": self.caller.id, "state": state.value},
        )
        if self._on_state_change is None:
            return
        try:
            await self._on_state_change(state)
        except Exception as e:
            logger.error(f"State observer failed: {e}", exc_info=True)

    async def start(self) -> OrchestratorState:
        """Search, rank and ring candidates until one outcome is reached.

        Returns:
            The final state: connected, no_therapists, error or cancelled.
        """
        if self._running:
            raise ValidationError(message="Orchestrator is already running")
        self._running = True
        self._cancel_requested.clear()
        self.current_call = None
        self.connected_call = None
        self.media_handle = None
        self.attempted = []
        self.last_error = None
        try:
            await self._run()
        finally:
            self._running = False
        return self.state

    async def retry(self) -> OrchestratorState:
        """Start over after ``no_therapists`` or ``error``."""
        if self.state not in RETRYABLE_STATES:
            raise ValidationError(
                message=f"Cannot retry from state '{self.state.value}'",
                details={"state": self.state.value},
            )
        return await self.start()

    async def cancel(self) -> None:
        """Request user cancellation; the running flow exits with ``cancelled``."""
        if self._running:
            logger.info("User cancelled instant call", extra={"caller_id": self.caller.id})
            self._cancel_requested.set()

    async def _run(self) -> None:
        await self._set_state(OrchestratorState.SEARCHING)

        search = await self._race_cancel(self._search())
        if not search.done():
            search.cancel()
            await asyncio.gather(search, return_exceptions=True)
            await self._set_state(OrchestratorState.CANCELLED)
            return

        try:
            ranked = search.result()
        except Exception as e:
            log_error(e, context={"caller_id": self.caller.id, "stage": "ranking"})
            self.last_error = (
                e
                if isinstance(e, SignalingException)
                else ExternalServiceError(service="availability", message=str(e))
            )
            await self._set_state(OrchestratorState.ERROR)
            return

        if self._cancel_requested.is_set():
            await self._set_state(OrchestratorState.CANCELLED)
            return

        if not ranked:
            logger.info("No candidates available", extra={"caller_id": self.caller.id})
            self.last_error = NoCandidatesAvailableError()
            await self._set_state(OrchestratorState.NO_THERAPISTS)
            return

        for candidate in ranked:
            if self._cancel_requested.is_set():
                break

            outcome, record = await self._attempt(candidate)
            if outcome == _Outcome.ACCEPTED:
                await self._connect(record)
                return
            if outcome == _Outcome.USER_CANCELLED:
                break

        if self._cancel_requested.is_set():
            await self._set_state(OrchestratorState.CANCELLED)
            return

        logger.info(
            f"All {len(ranked)} candidates exhausted",
            extra={"caller_id": self.caller.id, "attempted": len(self.attempted)},
        )
        self.last_error = NoCandidatesAvailableError(
            message="No candidate answered",
            details={"attempted": list(self.attempted)},
        )
        await self._set_state(OrchestratorState.NO_THERAPISTS)

    async def _search(self) -> List[Candidate]:
        available = await self.availability.list_available(self.preference)
        return rank_candidates(available, self.preference)

    async def _race_cancel(self, aw: Awaitable[Any]) -> asyncio.Future:
        """Run ``aw`` until it finishes or the user cancels, whichever is first.

        Returns the future wrapping ``aw``; it is still pending if the user
        cancelled first.
        """
        work = asyncio.ensure_future(aw)
        cancel_waiter = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            await asyncio.wait({work, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            cancel_waiter.cancel()
        return work

    def _abandon_when_created(self, creation: asyncio.Future) -> None:
        async def abandon() -> None:
            try:
                record = await creation
            except Exception as e:
                logger.debug(f"Call creation after user cancel failed: {e}")
                return
            with call_context(record.id):
                await self._abandon(record, ended_by_user=True)

        task = asyncio.create_task(abandon(), name="abandon-created-call")
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _attempt(self, candidate: Candidate) -> Tuple[_Outcome, Optional[CallRecord]]:
        callee = Participant(
            id=candidate.id,
            name=candidate.display_name or None,
            avatar_url=candidate.avatar_url,
        )
        creation = await self._race_cancel(
            self.signaling.create_call(self.caller, callee, call_type=CallType.INSTANT)
        )
        if not creation.done():
            # The record may still be written; cancel it once it exists
            self._abandon_when_created(creation)
            return _Outcome.USER_CANCELLED, None

        try:
            record = creation.result()
        except SignalingException as e:
            logger.warning(
                f"Skipping candidate {candidate.id}: could not create call ({e.code})",
                extra={"caller_id": self.caller.id, "candidate_id": candidate.id},
            )
            return _Outcome.REJECTED, None

        self.current_call = record
        self.attempted.append(record.id)
        with call_context(record.id):
            await self._set_state(OrchestratorState.CALLING)
            return await self._ring(candidate, record)

    async def _ring(
        self, candidate: Candidate, record: CallRecord
    ) -> Tuple[_Outcome, Optional[CallRecord]]:
        loop = asyncio.get_running_loop()
        settled: asyncio.Future = loop.create_future()

        async def on_change(update: CallRecord) -> None:
            if not settled.done() and (update.status == CallStatus.ACCEPTED or update.is_terminal):
                settled.set_result(update)

        async def on_lost(error: SubscriptionLostError) -> None:
            if not settled.done():
                settled.set_result(None)

        subscription: Optional[Subscription] = None
        try:
            try:
                subscription = await self.signaling.subscribe_to_call(record.id, on_change, on_lost)
            except SignalingException as e:
                logger.warning(
                    f"Could not watch call {record.id}: {e.message}",
                    extra={"call_id": record.id},
                )
                settled.set_result(None)

            outcome, latest = await self._wait_for_outcome(settled)
        finally:
            if subscription is not None:
                await subscription.close()

        if outcome == _Outcome.USER_CANCELLED:
            await self._abandon(record, ended_by_user=True)
            return outcome, record

        if outcome in (_Outcome.TIMEOUT, _Outcome.LOST):
            logger.info(
                f"No answer from {candidate.id} on call {record.id} ({outcome.value})",
                extra={"call_id": record.id, "candidate_id": candidate.id},
            )
            if await self._abandon(record):
                return _Outcome.ACCEPTED, await self._reread(record)
            return outcome, record

        if latest.status == CallStatus.ACCEPTED:
            return _Outcome.ACCEPTED, latest

        logger.info(
            f"Call {record.id} finished as {latest.status.value}, trying next candidate",
            extra={"call_id": record.id, "status": latest.status.value},
        )
        return _Outcome.REJECTED, latest

    async def _wait_for_outcome(
        self, settled: asyncio.Future
    ) -> Tuple[_Outcome, Optional[CallRecord]]:
        cancel_waiter = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {settled, cancel_waiter},
                timeout=self.ring_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()

        if cancel_waiter in done:
            return _Outcome.USER_CANCELLED, None
        if settled in done:
            latest = settled.result()
            if latest is None:
                return _Outcome.LOST, None
            return _Outcome.ACCEPTED if latest.status == CallStatus.ACCEPTED else _Outcome.REJECTED, latest
        return _Outcome.TIMEOUT, None

    async def _reread(self, record: CallRecord) -> CallRecord:
        try:
            latest = await self.signaling.get_call(record.id)
        except SignalingException as e:
            logger.warning(f"Could not re-read call {record.id}: {e.message}")
            return record
        return latest or record

    async def _abandon(self, record: CallRecord, ended_by_user: bool = False) -> bool:
        """Best-effort cancel of an unanswered call.

        Returns True if the cancel lost the race to the callee's accept, in
        which case the call is live and should be connected instead (unless
        the user is leaving, in which case it is ended).
        """
        try:
            await self.signaling.cancel_call(record.id, actor_id=self.caller.id)
            return False
        except InvalidTransitionError as e:
            if e.current != CallStatus.ACCEPTED.value:
                return False
            if not ended_by_user:
                logger.info(
                    f"Call {record.id} was accepted before it could be cancelled",
                    extra={"call_id": record.id},
                )
                return True
            try:
                await self.signaling.end_call(record.id, actor_id=self.caller.id)
            except SignalingException as end_error:
                logger.warning(f"Failed to end call {record.id}: {end_error.message}")
            return False
        except SignalingException as e:
            logger.warning(
                f"Best-effort cancel of call {record.id} failed: {e.message}",
                extra={"call_id": record.id, "code": e.code},
            )
            return False

    async def _connect(self, record: CallRecord) -> None:
        await self._set_state(OrchestratorState.CONNECTING)
        try:
            self.media_handle = await self.media_transport.join(record.channel_name, self.caller.id)
        except Exception as e:
            log_error(e, context={"call_id": record.id, "stage": "media_join"})
            self.last_error = ExternalServiceError(
                service="media-transport", message=f"Failed to join media session: {e}"
            )
            try:
                await self.signaling.end_call(record.id, actor_id=self.caller.id)
            except SignalingException as end_error:
                logger.warning(f"Failed to end call {record.id}: {end_error.message}")
            await self._set_state(OrchestratorState.ERROR)
            return

        self.connected_call = record
        await self._set_state(OrchestratorState.CONNECTED)
