"""
Tests for the agent-side feedback wait.
"""

import threading
import time

from conftest import UI_SPEC_CONTENT, free_port
from visual_delivery.client import DeliveryClient, RequestFailed
from visual_delivery.errors import ServerUnreachable
from visual_delivery.waiter import FeedbackWaiter, WaitRequest, WaitState


class FakeClient:
    """In-memory stand-in for DeliveryClient driven by a script of poll results."""

    base_url = 'http://localhost:0'
    timeout = 0.1

    def __init__(self, polls=None, healthy=True):
        self.polls = list(polls or [])
        self.healthy = healthy
        self.calls = []
        self.delivery_id = 'd_1_001'

    def health(self):
        self.calls.append(('health',))
        if not self.healthy:
            raise ServerUnreachable('connection refused')
        return {'status': 'ok'}

    def upsert_alignment(self, title, content, metadata, agent_session_id, thread_id):
        self.calls.append(('upsert', title, thread_id))
        return {'id': self.delivery_id, 'url': f'http://localhost:0/d/{self.delivery_id}',
                'replaced_delivery_id': None}

    def heartbeat(self, agent_session_id, thread_id):
        self.calls.append(('heartbeat', thread_id))
        return {'status': 'ok'}

    def active_alignment(self, agent_session_id):
        self.calls.append(('active',))
        if self.polls:
            result = self.polls.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return self.waiting()

    def resolve_alignment(self, agent_session_id, thread_id, delivery_id):
        self.calls.append(('resolve', delivery_id))
        return {'status': 'resolved'}

    def cancel_alignment(self, agent_session_id, thread_id, reason):
        self.calls.append(('cancel', reason))
        return {'status': 'canceled'}

    def waiting(self, pending=()):
        return {
            'active': {'id': self.delivery_id},
            'pending_feedback_count': len(pending),
            'pending_feedback': list(pending),
        }

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


def _request(**overrides):
    options = dict(
        title='Plan', agent_session_id='s1', thread_id='t1', content=UI_SPEC_CONTENT,
        timeout=5.0, poll_interval=0.01, heartbeat_interval=0.01,
    )
    options.update(overrides)
    return WaitRequest(**options)


class TestWaitOutcomes:
    """Terminal states reached from polling."""

    def test_responded(self):
        """Test pending feedback ends the wait and resolves the alignment."""
        fake = FakeClient()
        feedback = [{'id': 'f_1', 'kind': 'annotation', 'handled': False}]
        fake.polls = [fake.waiting(), fake.waiting(feedback)]

        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'responded'
        assert result['feedback'] == feedback
        assert result['pending_feedback_count'] == 1
        assert result['delivery_id'] == 'd_1_001'
        assert result['thread_id'] == 't1'
        assert fake.called('resolve') == [('resolve', 'd_1_001')]

    def test_replaced(self):
        fake = FakeClient(polls=[{'active': {'id': 'd_1_999'}, 'pending_feedback': []}])
        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'replaced'
        assert result['replaced_by'] == 'd_1_999'
        assert not fake.called('cancel')

    def test_canceled_externally(self):
        fake = FakeClient(polls=[{'active': None}])
        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'canceled'
        assert result['reason'] == 'no_active_alignment'

    def test_poll_errors_are_retried(self):
        """Test a failed poll does not end the wait."""
        fake = FakeClient()
        fake.polls = [
            ServerUnreachable('blip'),
            RequestFailed('boom', status=500),
            fake.waiting([{'id': 'f_1'}]),
        ]
        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'responded'

    def test_timeout_not_before_deadline(self):
        """Test the wait times out only once the deadline has passed, then cancels."""
        fake = FakeClient()
        start = time.monotonic()
        result = FeedbackWaiter(fake, _request(timeout=0.3)).run()
        assert time.monotonic() - start >= 0.3
        assert result['status'] == 'timeout'
        assert fake.called('cancel') == [('cancel', 'timeout')]

    def test_heartbeats_sent_while_waiting(self):
        fake = FakeClient()
        FeedbackWaiter(fake, _request(timeout=0.2)).run()
        assert fake.called('heartbeat')
        assert all(call == ('heartbeat', 't1') for call in fake.called('heartbeat'))


class TestWaitErrors:
    """Failures while creating."""

    def test_missing_title(self):
        fake = FakeClient()
        result = FeedbackWaiter(fake, _request(title='')).run()
        assert result['status'] == 'error'
        assert '--title' in result['message']
        assert fake.calls == []

    def test_missing_session(self):
        result = FeedbackWaiter(FakeClient(), _request(agent_session_id=None)).run()
        assert result['status'] == 'error'
        assert '--agent-session-id' in result['message']

    def test_server_down(self):
        fake = FakeClient(healthy=False)
        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'error'
        assert not fake.called('upsert')

    def test_upsert_rejected(self):
        fake = FakeClient()

        def reject(*args):
            raise RequestFailed('content must be ...', code='INVALID_REQUEST', status=400)

        fake.upsert_alignment = reject
        result = FeedbackWaiter(fake, _request()).run()
        assert result['status'] == 'error'
        assert result['message'] == 'content must be ...'


class TestFinalization:
    def test_interrupt_cancels_once(self):
        """Test an interrupt cancels remotely and emits exactly one result."""
        fake = FakeClient()
        emitted = []
        waiter = FeedbackWaiter(fake, _request(poll_interval=0.05), emit=emitted.append)

        timer = threading.Timer(0.2, waiter.interrupt)
        timer.start()
        result = waiter.run()
        timer.join()
        waiter.interrupt()

        assert result['status'] == 'canceled'
        assert result['reason'] == 'interrupted'
        assert fake.called('cancel') == [('cancel', 'interrupted')]
        assert emitted == [result]
        assert waiter.state is WaitState.CANCELED

    def test_emit_once_per_run(self):
        emitted = []
        fake = FakeClient(polls=[{'active': None}])
        waiter = FeedbackWaiter(fake, _request(), emit=emitted.append)
        waiter.run()
        waiter._finalize(WaitState.TIMEOUT)
        assert len(emitted) == 1
        assert emitted[0]['status'] == 'canceled'

    def test_thread_id_generated(self):
        request = _request(thread_id=None)
        assert request.thread_id.startswith('thread-')
        assert len(request.thread_id) == len('thread-') + 8

    def test_terminal_states(self):
        assert not WaitState.CREATING.is_terminal
        assert not WaitState.WAITING.is_terminal
        assert WaitState.RESPONDED.is_terminal
        assert WaitState.ERROR.is_terminal


class TestLiveServer:
    def test_reviewer_response_ends_wait(self, live_server):
        """Test a full wait: the reviewer commits feedback and the agent receives it."""
        client = DeliveryClient.for_port(live_server.port, host='127.0.0.1')
        waiter = FeedbackWaiter(client, _request(timeout=15.0, poll_interval=0.1, heartbeat_interval=0.1))

        def reviewer():
            deadline = time.monotonic() + 10
            while waiter.delivery_id is None and time.monotonic() < deadline:
                time.sleep(0.05)
            client._request('POST', f'/api/deliveries/{waiter.delivery_id}/feedback/commit', {
                'items': [{'kind': 'annotation', 'payload': {'text': 'Ship it'}}],
            })

        thread = threading.Thread(target=reviewer)
        thread.start()
        result = waiter.run()
        thread.join()

        assert result['status'] == 'responded'
        assert result['feedback'][0]['payload'] == {'text': 'Ship it'}
        assert result['url'].endswith(f"/d/{result['delivery_id']}")

        active = client.active_alignment('s1')
        assert active == {'active': None}
        delivery = client._request('GET', f"/api/deliveries/{result['delivery_id']}")
        assert delivery['alignment_state'] == 'resolved'
        # Feedback stays pending until the agent resolves it explicitly
        assert delivery['status'] == 'pending_feedback'

    def test_second_wait_replaces_first(self, live_server):
        """Test a newer wait on the same session and thread supersedes an older one."""
        client = DeliveryClient.for_port(live_server.port, host='127.0.0.1')
        first = FeedbackWaiter(client, _request(timeout=15.0, poll_interval=0.1))
        outcome = {}

        thread = threading.Thread(target=lambda: outcome.update(first.run()))
        thread.start()
        deadline = time.monotonic() + 10
        while first.delivery_id is None and time.monotonic() < deadline:
            time.sleep(0.05)

        second = FeedbackWaiter(client, _request(timeout=0.5, poll_interval=0.1))
        second_result = second.run()
        thread.join(timeout=20)

        assert outcome['status'] == 'replaced'
        assert outcome['replaced_by'] == second.delivery_id
        assert second_result['status'] == 'timeout'

    def test_unreachable_server(self):
        client = DeliveryClient.for_port(free_port(), host='127.0.0.1', max_retries=1, initial_retry_delay=0.01)
        result = FeedbackWaiter(client, _request()).run()
        assert result['status'] == 'error'
