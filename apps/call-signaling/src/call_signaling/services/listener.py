"""Inbound Call Listener: ring, accept, decline and auto-decline on the callee side."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from call_signaling.clients.media_transport import MediaTransport
from call_signaling.config import Settings, get_settings
from call_signaling.models.call import CallRecord, CallStatus, DeclineReason
from call_signaling.services.signaling_service import CallSignalingService
from call_signaling.store.base import Subscription
from call_signaling.utils.errors import (
    InvalidTransitionError,
    SignalingException,
    SubscriptionLostError,
)
from call_signaling.utils.logging import call_context, get_logger, log_error

logger = get_logger("listener")


class AcceptOutcome(str, Enum):
    """Result of the callee pressing accept."""

    ACCEPTED = "accepted"
    # The caller cancelled (or the call otherwise ended) first
    UNAVAILABLE = "unavailable"
    # The store could not be reached; the ring stays up
    FAILED = "failed"


class DismissReason(str, Enum):
    """Why the ring UI was taken down."""

    DECLINED = "declined"
    MISSED = "missed"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    ANSWERED_ELSEWHERE = "answered_elsewhere"
    CONNECTION_LOST = "connection_lost"


RingHandler = Callable[[CallRecord], Awaitable[None]]
DismissHandler = Callable[[CallRecord, DismissReason], Awaitable[None]]
ErrorHandler = Callable[[SignalingException], Awaitable[None]]

_DISMISS_REASONS = {
    CallStatus.CANCELLED: DismissReason.CANCELLED,
    CallStatus.MISSED: DismissReason.MISSED,
    CallStatus.DECLINED: DismissReason.DECLINED,
    CallStatus.ENDED: DismissReason.CANCELLED,
    CallStatus.ACCEPTED: DismissReason.ANSWERED_ELSEWHERE,
}


class InboundCallListener:
    """Callee-side state machine.

    At most one call rings at a time. A call that arrives while another is
    ringing or live is declined as busy. User actions and the auto-decline
    timer are serialised through ``action_in_progress``; an action requested
    while another is running is ignored.
    """

    def __init__(
        self,
        signaling: CallSignalingService,
        media_transport: MediaTransport,
        callee_id: str,
        on_ring: Optional[RingHandler] = None,
        on_dismissed: Optional[DismissHandler] = None,
        on_error: Optional[ErrorHandler] = None,
        auto_decline_seconds: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.signaling = signaling
        self.media_transport = media_transport
        self.callee_id = callee_id
        self.auto_decline_seconds = (
            auto_decline_seconds
            if auto_decline_seconds is not None
            else settings.signaling.auto_decline_seconds
        )
        self._on_ring = on_ring
        self._on_dismissed = on_dismissed
        self._on_error = on_error

        self.ringing_call: Optional[CallRecord] = None
        self.active_call: Optional[CallRecord] = None
        self.media_handle: Any = None
        self.action_in_progress = False

        self._action_done = asyncio.Event()
        self._action_done.set()
        self._incoming: Optional[Subscription] = None
        self._call_subscription: Optional[Subscription] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._incoming is not None

    async def start(self) -> None:
        """Start listening for incoming calls.

        Raises:
            StoreUnavailableError: If the incoming-call subscription cannot be opened.
        """
        if self._incoming is not None:
            return
        self._incoming = await self.signaling.subscribe_to_incoming_calls(
            self.callee_id, self._handle_incoming, self._handle_incoming_lost
        )
        logger.info(f"Listening for calls to {self.callee_id}")

    async def stop(self) -> None:
        """Stop listening and tear down any ring state without declining."""
        incoming, self._incoming = self._incoming, None
        if incoming is not None:
            await incoming.close()
        self.ringing_call = None
        self.active_call = None
        self._cancel_timer()
        await self._close_call_subscription()
        logger.info(f"Stopped listening for calls to {self.callee_id}")

    async def _emit(self, handler: Optional[Callable[..., Awaitable[None]]], *args) -> None:
        if handler is None:
            return
        try:
            await handler(*args)
        except Exception as e:
            logger.error(f"Listener callback failed: {e}", exc_info=True)

    def _begin_action(self) -> bool:
        if self.action_in_progress:
            return False
        self.action_in_progress = True
        self._action_done.clear()
        return True

    def _end_action(self) -> None:
        self.action_in_progress = False
        self._action_done.set()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _close_call_subscription(self) -> None:
        subscription, self._call_subscription = self._call_subscription, None
        if subscription is not None:
            await subscription.close()

    async def _dismiss(self, record: CallRecord, reason: DismissReason) -> None:
        if self.ringing_call is None or self.ringing_call.id != record.id:
            return
        self.ringing_call = None
        self._cancel_timer()
        await self._close_call_subscription()
        logger.info(
            f"Dismissed call {record.id} ({reason.value})",
            extra={"call_id": record.id, "reason": reason.value},
        )
        await self._emit(self._on_dismissed, record, reason)

    async def _handle_incoming(self, record: CallRecord) -> None:
        with call_context(record.id):
            await self._receive(record)

    async def _receive(self, record: CallRecord) -> None:
        if self.ringing_call is not None and self.ringing_call.id == record.id:
            return
        if self.ringing_call is not None or self.active_call is not None:
            await self._decline_busy(record)
            return

        self.ringing_call = record
        logger.info(
            f"Incoming call {record.id} from {record.caller_id}",
            extra={"call_id": record.id, "caller_id": record.caller_id},
        )
        await self._emit(self._on_ring, record)

        try:
            await self.signaling.update_ringing(record.id, actor_id=self.callee_id)
        except InvalidTransitionError:
            await self._dismiss(record, DismissReason.UNAVAILABLE)
            return
        except SignalingException as e:
            logger.warning(f"Failed to mark call {record.id} ringing: {e.message}")

        # Accepted while marking ringing: still watch it to see the call end
        if not (self._is_ringing(record) or self._is_active(record)):
            return

        try:
            subscription = await self.signaling.subscribe_to_call(
                record.id, self._handle_call_change, self._handle_call_lost
            )
        except SignalingException as e:
            logger.warning(f"Failed to watch call {record.id}: {e.message}")
            subscription = None

        if subscription is not None:
            # Declined, cancelled or stopped while subscribing
            if not (self._is_ringing(record) or self._is_active(record)):
                await subscription.close()
                return
            self._call_subscription = subscription

        if self._is_ringing(record):
            self._timer = asyncio.create_task(
                self._auto_decline(record), name=f"auto-decline:{record.id}"
            )

    def _is_ringing(self, record: CallRecord) -> bool:
        return self.ringing_call is not None and self.ringing_call.id == record.id

    def _is_active(self, record: CallRecord) -> bool:
        return self.active_call is not None and self.active_call.id == record.id

    async def _decline_busy(self, record: CallRecord) -> None:
        logger.info(
            f"Declining call {record.id}: already on a call",
            extra={"call_id": record.id, "caller_id": record.caller_id},
        )
        try:
            await self.signaling.decline_call(record.id, DeclineReason.BUSY, actor_id=self.callee_id)
        except SignalingException as e:
            logger.warning(f"Failed to decline busy call {record.id}: {e.message}")

    async def _handle_call_change(self, record: CallRecord) -> None:
        if self.active_call is not None and record.id == self.active_call.id:
            if record.is_terminal:
                logger.info(f"Call {record.id} finished as {record.status.value}")
                self.active_call = None
                await self._close_call_subscription()
            return

        if self.ringing_call is None or record.id != self.ringing_call.id:
            return
        # The running action reports its own result
        if self.action_in_progress:
            return
        reason = _DISMISS_REASONS.get(record.status)
        if reason is not None:
            await self._dismiss(record, reason)

    async def _handle_call_lost(self, error: SubscriptionLostError) -> None:
        if self.ringing_call is not None:
            await self._dismiss(self.ringing_call, DismissReason.CONNECTION_LOST)

    async def _handle_incoming_lost(self, error: SubscriptionLostError) -> None:
        logger.error(f"Incoming call subscription lost for {self.callee_id}")
        await self._emit(self._on_error, error)
        await self.stop()

    async def _auto_decline(self, record: CallRecord) -> None:
        await asyncio.sleep(self.auto_decline_seconds)
        await self._action_done.wait()
        if self.ringing_call is None or self.ringing_call.id != record.id:
            return
        if not self._begin_action():
            return
        try:
            logger.info(f"Auto-declining unanswered call {record.id}", extra={"call_id": record.id})
            try:
                await self.signaling.decline_call(record.id, DeclineReason.TIMEOUT, actor_id=self.callee_id)
            except SignalingException as e:
                logger.warning(f"Auto-decline of call {record.id} failed: {e.message}")
            await self._dismiss(record, DismissReason.MISSED)
        finally:
            self._end_action()

    async def accept(self) -> Optional[AcceptOutcome]:
        """Accept the ringing call and hand off to the media transport.

        Returns:
            The outcome, or None if nothing is ringing or another action is running.
        """
        record = self.ringing_call
        if record is None or not self._begin_action():
            return None
        try:
            try:
                accepted = await self.signaling.accept_call(record.id, actor_id=self.callee_id)
            except InvalidTransitionError:
                await self._dismiss(record, DismissReason.UNAVAILABLE)
                return AcceptOutcome.UNAVAILABLE
            except SignalingException as e:
                log_error(e, context={"call_id": record.id, "action": "accept"})
                return AcceptOutcome.FAILED

            self.ringing_call = None
            self.active_call = accepted
            self._cancel_timer()

            try:
                self.media_handle = await self.media_transport.join(accepted.channel_name, self.callee_id)
            except Exception as e:
                log_error(e, context={"call_id": record.id, "stage": "media_join"})
                self.active_call = None
                await self._close_call_subscription()
                try:
                    await self.signaling.end_call(record.id, actor_id=self.callee_id)
                except SignalingException as end_error:
                    logger.warning(f"Failed to end call {record.id}: {end_error.message}")
                return AcceptOutcome.FAILED

            logger.info(f"Accepted call {record.id}", extra={"call_id": record.id})
            return AcceptOutcome.ACCEPTED
        finally:
            self._end_action()

    async def decline(self) -> bool:
        """Decline the ringing call.

        Returns:
            False if nothing is ringing or another action is running.
        """
        record = self.ringing_call
        if record is None or not self._begin_action():
            return False
        try:
            try:
                await self.signaling.decline_call(record.id, DeclineReason.USER, actor_id=self.callee_id)
            except InvalidTransitionError:
                logger.info(f"Call {record.id} ended before it could be declined")
            except SignalingException as e:
                logger.warning(f"Decline of call {record.id} failed: {e.message}")
            await self._dismiss(record, DismissReason.DECLINED)
            return True
        finally:
            self._end_action()
