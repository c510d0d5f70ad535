"""
Agent-side HTTP client for the delivery server.

Each call has a short socket timeout. Only the health check retries (with
exponential backoff); everything else fails fast and lets the caller decide,
since the wait loop already polls on a fixed interval.
"""

import json
import logging
import socket
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable, Optional

from visual_delivery.errors import DeliveryError, ServerUnreachable

logger = logging.getLogger(__name__)


class RequestFailed(DeliveryError):
    """The server answered with an error response."""

    def __init__(self, message: str, code: str = None, status: int = 500):
        super().__init__(message, code)
        self.http_status = status


class DeliveryClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 3,
        initial_retry_delay: float = 1.0,
        retry_backoff_multiplier: float = 2.0,
        max_retry_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.retry_backoff_multiplier = retry_backoff_multiplier
        self.max_retry_delay = max_retry_delay
        self._sleep = sleep

    @classmethod
    def for_port(cls, port: int, host: str = 'localhost', **kwargs) -> 'DeliveryClient':
        return cls(f"http://{host}:{port}", **kwargs)

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry ``attempt`` (0-indexed): 1s, 2s, 4s, ..."""
        delay = self.initial_retry_delay * (self.retry_backoff_multiplier ** attempt)
        return min(delay, self.max_retry_delay)

    def _request(self, method: str, path: str, data: Optional[dict] = None, retries: int = 0) -> dict:
        url = f"{self.base_url}{path}"
        body = json.dumps(data).encode() if data is not None else None
        headers = {'Content-Type': 'application/json'} if body is not None else {}

        for attempt in range(retries + 1):
            request = urllib.request.Request(url, data=body, method=method, headers=headers)
            try:
                with urllib.request.urlopen(request, timeout=self.timeout) as response:
                    raw = response.read()
                break
            except urllib.error.HTTPError as e:
                raise self._error_from_response(e)
            except (urllib.error.URLError, socket.timeout, ConnectionError, OSError) as e:
                if attempt < retries:
                    delay = self.retry_delay(attempt)
                    logger.debug(f"{method} {path} failed ({e}); retrying in {delay:.1f}s")
                    self._sleep(delay)
                    continue
                raise ServerUnreachable(
                    f"Server unreachable at {self.base_url} after {attempt + 1} attempt(s): {e}"
                )

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            raise RequestFailed(f"Invalid JSON response from {method} {path}")

    @staticmethod
    def _error_from_response(error: urllib.error.HTTPError) -> RequestFailed:
        try:
            payload = json.loads(error.read() or b'{}')
            detail = payload.get('error') or {}
        except (json.JSONDecodeError, AttributeError, OSError):
            detail = {}
        if not isinstance(detail, dict):
            detail = {'message': str(detail)}
        return RequestFailed(
            detail.get('message') or f"HTTP {error.code}",
            code=detail.get('code') or 'HTTP_ERROR',
            status=error.code,
        )

    # ========================================================================
    # Endpoints
    # ========================================================================

    def health(self) -> dict:
        return self._request('GET', '/health', retries=self.max_retries)

    def upsert_alignment(self, title: str, content: dict, metadata: dict,
                         agent_session_id: str, thread_id: str) -> dict:
        return self._request('POST', '/api/alignment/upsert', {
            'title': title,
            'content': content,
            'metadata': metadata,
            'agent_session_id': agent_session_id,
            'thread_id': thread_id,
        })

    def heartbeat(self, agent_session_id: str, thread_id: str) -> dict:
        return self._request('POST', '/api/alignment/heartbeat', {
            'agent_session_id': agent_session_id,
            'thread_id': thread_id,
        })

    def active_alignment(self, agent_session_id: str) -> dict:
        query = urllib.parse.urlencode({'agent_session_id': agent_session_id})
        return self._request('GET', f"/api/alignment/active?{query}")

    def resolve_alignment(self, agent_session_id: str, thread_id: str, delivery_id: str) -> dict:
        return self._request('POST', '/api/alignment/resolve', {
            'agent_session_id': agent_session_id,
            'thread_id': thread_id,
            'delivery_id': delivery_id,
        })

    def cancel_alignment(self, agent_session_id: str, thread_id: str, reason: str) -> dict:
        return self._request('POST', '/api/alignment/cancel', {
            'agent_session_id': agent_session_id,
            'thread_id': thread_id,
            'reason': reason,
        })
