"""
Server configuration and the runtime discovery file.

While the server runs it leaves two files in the data directory:
``server.pid`` for process management and ``server.json`` with the address it
listens on, which agent-side commands read to find the port.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from visual_delivery.locking import LOCK_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3847
DEFAULT_HOST = '127.0.0.1'
DEFAULT_DATA_DIR = Path('.visual-delivery')

RUNTIME_FILE = 'server.json'
PID_FILE = 'server.pid'


@dataclass
class ServerConfig:
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    lock_timeout: float = LOCK_TIMEOUT
    design_poll_interval: float = 1.0

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)

    @property
    def base_url(self) -> str:
        host = 'localhost' if self.host in ('127.0.0.1', '0.0.0.0', '::') else self.host
        return f"http://{host}:{self.port}"

    def delivery_url(self, delivery_id: str) -> str:
        return f"{self.base_url}/d/{delivery_id}"


def write_runtime_files(config: ServerConfig):
    config.data_dir.mkdir(parents=True, exist_ok=True)
    (config.data_dir / PID_FILE).write_text(str(os.getpid()))
    runtime = {
        'host': config.host,
        'port': config.port,
        'pid': os.getpid(),
        'started_at': datetime.now(timezone.utc).isoformat(),
    }
    (config.data_dir / RUNTIME_FILE).write_text(json.dumps(runtime, indent=2))


def remove_runtime_files(config: ServerConfig):
    for name in (PID_FILE, RUNTIME_FILE):
        try:
            (config.data_dir / name).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Runtime file cleanup error: {e}")


def discover_port(data_dir: Optional[Path]) -> int:
    """Port of the server recorded in ``data_dir``, else the default."""
    if data_dir is None:
        return DEFAULT_PORT
    try:
        runtime = json.loads((Path(data_dir) / RUNTIME_FILE).read_text())
        return int(runtime.get('port', DEFAULT_PORT))
    except (OSError, json.JSONDecodeError, TypeError, ValueError):
        return DEFAULT_PORT
