"""
Pytest configuration and shared fixtures for Visual Delivery tests.
"""

import shutil
import socket
import tempfile
import threading
import time
from pathlib import Path

import pytest

from visual_delivery.config import ServerConfig
from visual_delivery.hub import BroadcastHub
from visual_delivery.repository import DeliveryRepository
from visual_delivery.store import RecordStore


UI_SPEC_CONTENT = {'type': 'ui_spec', 'ui_spec': {'title': 'Checkout', 'blocks': []}}
HTML_CONTENT = {'type': 'generated_html', 'html': '<h1>Report</h1>'}


@pytest.fixture
def temp_data_dir():
    """Create a temporary data directory for testing."""
    temp_dir = tempfile.mkdtemp()
    data_dir = Path(temp_dir) / '.visual-delivery'
    data_dir.mkdir(parents=True)

    yield data_dir

    # Cleanup
    shutil.rmtree(temp_dir)


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def store():
    """Record store with a short lock timeout so lock tests finish quickly."""
    return RecordStore(lock_timeout=1.0)


@pytest.fixture
def repository(temp_data_dir, hub, store):
    """Create a DeliveryRepository for testing."""
    return DeliveryRepository(temp_data_dir, hub=hub, store=store, project_name='demo-project')


@pytest.fixture
def delivery(repository):
    """A plain task delivery with no feedback."""
    return repository.create('task_delivery', 'Checkout redesign', UI_SPEC_CONTENT)


@pytest.fixture
def server_config(temp_data_dir):
    return ServerConfig(data_dir=temp_data_dir, port=3999, lock_timeout=1.0, design_poll_interval=0.1)


@pytest.fixture
def client(server_config, repository):
    """FastAPI TestClient with lifespan running."""
    from fastapi.testclient import TestClient

    from visual_delivery.server import create_app

    app = create_app(server_config, repository=repository)
    with TestClient(app) as test_client:
        yield test_client


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


@pytest.fixture
def live_server(temp_data_dir):
    """Run the app under uvicorn in a background thread. Yields its ServerConfig."""
    import uvicorn

    from visual_delivery.server import create_app

    config = ServerConfig(data_dir=temp_data_dir, port=free_port())
    server = uvicorn.Server(uvicorn.Config(
        create_app(config), host=config.host, port=config.port, log_level='warning',
    ))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started and time.monotonic() < deadline:
        time.sleep(0.05)
    assert server.started

    yield config

    server.should_exit = True
    thread.join(timeout=10)
