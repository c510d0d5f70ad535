"""
Agent-side wait for reviewer feedback.

Turns the asynchronous review into a synchronous call for the agent:

    creating -> waiting -> responded | canceled | replaced | timeout

``creating`` health-checks the server and upserts the alignment delivery for
(agent_session_id, thread_id); any failure there ends in ``error``. While
``waiting`` a background thread sends heartbeats and the main thread polls the
session's active alignment:

- no active alignment            -> canceled (someone closed it)
- a different delivery is active -> replaced (a newer upsert superseded us)
- ours, with pending feedback    -> resolve it and return the feedback

The wait ends in ``timeout`` at the deadline, and in ``canceled`` when
interrupted. Whatever happens, the result is emitted exactly once.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from visual_delivery.client import DeliveryClient
from visual_delivery.errors import DeliveryError, ServerUnreachable, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0  # seconds
POLL_INTERVAL = 2.0
HEARTBEAT_INTERVAL = 2.0


class WaitState(str, Enum):
    CREATING = "creating"
    WAITING = "waiting"
    RESPONDED = "responded"
    CANCELED = "canceled"
    REPLACED = "replaced"
    TIMEOUT = "timeout"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self not in (WaitState.CREATING, WaitState.WAITING)


def new_thread_id() -> str:
    return f"thread-{str(uuid.uuid4())[:8]}"


@dataclass
class WaitRequest:
    title: str
    agent_session_id: str
    content: dict
    thread_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = POLL_INTERVAL
    heartbeat_interval: float = HEARTBEAT_INTERVAL

    def __post_init__(self):
        if not self.thread_id:
            self.thread_id = new_thread_id()


class FeedbackWaiter:
    def __init__(
        self,
        client: DeliveryClient,
        request: WaitRequest,
        emit: Optional[Callable[[dict], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.request = request
        self.state = WaitState.CREATING
        self.delivery_id: Optional[str] = None
        self.url: Optional[str] = None
        self.result: Optional[dict] = None
        self._emit = emit
        self._clock = clock
        self._finalized = False
        self._final_lock = threading.Lock()
        self._stop = threading.Event()
        self._interrupt_reason: Optional[str] = None
        self._heartbeat_thread: Optional[threading.Thread] = None

    # ========================================================================
    # Public API
    # ========================================================================

    def run(self) -> dict:
        """Create the delivery and block until a terminal state. Returns the result."""
        try:
            self._create()
        except DeliveryError as e:
            self._finalize(WaitState.ERROR, message=e.message)
            return self.result

        self.state = WaitState.WAITING
        logger.info(f"Waiting for feedback at {self.url}")
        self._start_heartbeat()
        deadline = self._clock() + self.request.timeout

        try:
            while not self._finalized:
                if self._interrupt_reason:
                    self._on_interrupt()
                    break
                if self._clock() >= deadline:
                    self._on_timeout()
                    break
                if self._poll_once():
                    break
                remaining = deadline - self._clock()
                self._stop.wait(max(0.0, min(self.request.poll_interval, remaining)))
        finally:
            self._stop_heartbeat()
        return self.result

    def interrupt(self, reason: str = 'interrupted'):
        """
        Request cancellation. Safe to call from a signal handler: the wait
        loop notices on its next step and finalizes there.
        """
        if self._finalized:
            return
        self._interrupt_reason = reason
        self._stop.set()

    @property
    def finalized(self) -> bool:
        return self._finalized

    # ========================================================================
    # States
    # ========================================================================

    def _create(self):
        req = self.request
        if not isinstance(req.title, str) or not req.title.strip():
            raise ValidationError('Missing required argument: --title')
        if not isinstance(req.agent_session_id, str) or not req.agent_session_id.strip():
            raise ValidationError('Missing required argument: --agent-session-id')

        try:
            self.client.health()
        except DeliveryError as e:
            raise ServerUnreachable(f"Server not running at {self.client.base_url}: {e.message}")

        logger.info(f'Creating blocking delivery: "{req.title}"')
        created = self.client.upsert_alignment(
            req.title, req.content, req.metadata, req.agent_session_id, req.thread_id,
        )
        self.delivery_id = created.get('id')
        self.url = created.get('url')
        if not self.delivery_id:
            raise DeliveryError('Server did not return a delivery id')
        if created.get('replaced_delivery_id'):
            logger.info(f"Replaced previous delivery {created['replaced_delivery_id']}")

    def _poll_once(self) -> bool:
        """One poll. Returns True when it reached a terminal state."""
        req = self.request
        try:
            snapshot = self.client.active_alignment(req.agent_session_id)
        except DeliveryError as e:
            logger.warning(f"Poll failed, will retry: {e.message}")
            return False

        active = snapshot.get('active')
        if not active:
            return self._finalize(WaitState.CANCELED, reason='no_active_alignment')

        if active.get('id') != self.delivery_id:
            return self._finalize(WaitState.REPLACED, replaced_by=active.get('id'))

        pending = snapshot.get('pending_feedback') or []
        if not pending:
            return False

        try:
            self.client.resolve_alignment(req.agent_session_id, req.thread_id, self.delivery_id)
        except DeliveryError as e:
            logger.warning(f"Could not resolve alignment {self.delivery_id}: {e.message}")
        logger.info('Response received!')
        return self._finalize(
            WaitState.RESPONDED,
            feedback=pending,
            pending_feedback_count=len(pending),
        )

    def _on_timeout(self):
        minutes = round(self.request.timeout / 60)
        logger.info(f"No response received within {minutes} minute(s)")
        self._cancel_remote('timeout')
        self._finalize(
            WaitState.TIMEOUT,
            message=f"No response received within {self.request.timeout:g} seconds.",
        )

    def _on_interrupt(self):
        reason = self._interrupt_reason or 'interrupted'
        logger.info(f"Interrupted ({reason}); canceling delivery")
        self._cancel_remote(reason)
        self._finalize(WaitState.CANCELED, reason=reason)

    def _cancel_remote(self, reason: str):
        try:
            self.client.cancel_alignment(self.request.agent_session_id, self.request.thread_id, reason)
        except DeliveryError as e:
            logger.warning(f"Best-effort cancel failed: {e.message}")

    def _finalize(self, state: WaitState, **details) -> bool:
        with self._final_lock:
            if self._finalized:
                return False
            self._finalized = True

        self._stop.set()
        self.state = state
        self.result = {
            'status': state.value,
            'delivery_id': self.delivery_id,
            'url': self.url,
            'agent_session_id': self.request.agent_session_id,
            'thread_id': self.request.thread_id,
            **details,
        }
        if self._emit:
            self._emit(self.result)
        return True

    # ========================================================================
    # Heartbeat
    # ========================================================================

    def _start_heartbeat(self):
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop, name='alignment-heartbeat', daemon=True,
        )
        self._heartbeat_thread.start()

    def _heartbeat_loop(self):
        req = self.request
        while not self._stop.wait(req.heartbeat_interval):
            try:
                self.client.heartbeat(req.agent_session_id, req.thread_id)
            except DeliveryError as e:
                logger.debug(f"Heartbeat failed: {e.message}")

    def _stop_heartbeat(self):
        self._stop.set()
        thread = self._heartbeat_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.client.timeout + 1)
        self._heartbeat_thread = None
