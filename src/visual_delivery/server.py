"""
HTTP and WebSocket boundary.

    GET  /health
    POST /api/deliveries                          create (alignment mode upserts)
    GET  /api/deliveries                          list: mode, status, agent_session_id, limit, offset
    GET  /api/deliveries/{id}                     hydrated record
    PUT  /api/deliveries/{id}/content
    GET  /api/deliveries/{id}/feedback            ?handled=true|false
    POST /api/deliveries/{id}/feedback/draft      replace drafts
    POST /api/deliveries/{id}/feedback/commit
    POST /api/deliveries/{id}/feedback/resolve
    POST /api/deliveries/{id}/feedback/revoke
    POST /api/deliveries/{id}/annotate
    GET  /api/deliveries/{id}/execution-events
    POST /api/deliveries/{id}/execution-events
    GET  /api/alignment/active?agent_session_id=
    POST /api/alignment/upsert | heartbeat | cancel | resolve
    GET  /api/settings, PUT /api/settings
    GET  /api/design-tokens
    WS   /ws                                      {event, data} frames

Handlers run on the event loop and call the synchronous repository directly,
so requests inside one server never interleave; the file locks only have to
guard against other processes.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from visual_delivery import __version__
from visual_delivery.config import ServerConfig, remove_runtime_files, write_runtime_files
from visual_delivery.errors import DeliveryError, PayloadTooLarge, ValidationError
from visual_delivery.hub import SUBSCRIBER_CLOSED, BroadcastHub
from visual_delivery.repository import DeliveryRepository, tokens_complete
from visual_delivery.store import RecordStore

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 10 * 1024 * 1024


# ============================================================================
# Request helpers
# ============================================================================

def get_repository(request: Request) -> DeliveryRepository:
    return request.app.state.repository


def get_config(request: Request) -> ServerConfig:
    return request.app.state.config


async def json_body(request: Request) -> dict:
    raw = await request.body()
    if len(raw) > MAX_BODY_BYTES:
        raise PayloadTooLarge(f"Request body exceeds {MAX_BODY_BYTES} bytes")
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError('Invalid JSON body')
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _int_param(value: Optional[str], name: str, default: int) -> int:
    if value is None or value == '':
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if parsed < 0:
        raise ValidationError(f"{name} must be non-negative")
    return parsed


def _bool_param(value: Optional[str], name: str) -> Optional[bool]:
    if value is None or value == '':
        return None
    lowered = value.lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no'):
        return False
    raise ValidationError(f"{name} must be true or false")


# ============================================================================
# Background tasks
# ============================================================================

async def watch_design_tokens(repository: DeliveryRepository, interval: float):
    """Broadcast design_updated whenever tokens.json changes to a complete token set."""
    path = repository.tokens_path
    last_mtime = path.stat().st_mtime if path.exists() else None
    while True:
        await asyncio.sleep(interval)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            last_mtime = None
            continue
        if mtime == last_mtime:
            continue
        last_mtime = mtime
        try:
            tokens = repository.read_design_tokens()
        except DeliveryError as e:
            logger.error(f"Invalid tokens.json: {e.message}")
            continue
        if tokens_complete(tokens):
            repository.hub.broadcast('design_updated', tokens)


async def _wait_for_disconnect(websocket: WebSocket):
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                return
    except (WebSocketDisconnect, RuntimeError):
        return


# ============================================================================
# Application
# ============================================================================

def create_app(
    config: Optional[ServerConfig] = None,
    hub: Optional[BroadcastHub] = None,
    repository: Optional[DeliveryRepository] = None,
) -> FastAPI:
    config = config or ServerConfig()
    if repository is None:
        hub = hub if hub is not None else BroadcastHub()
        repository = DeliveryRepository(config.data_dir, hub=hub, store=RecordStore(config.lock_timeout))
    hub = repository.hub

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        write_runtime_files(config)
        watcher = asyncio.create_task(watch_design_tokens(repository, config.design_poll_interval))
        logger.info(f"Server running at {config.base_url} (data: {config.data_dir})")
        try:
            yield
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher
            remove_runtime_files(config)
            logger.info("Server stopped")

    app = FastAPI(title='Visual Delivery', version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.hub = hub
    app.state.repository = repository
    app.state.started_at = time.monotonic()

    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(request: Request, exc: DeliveryError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(exc.to_dict(), status_code=exc.http_status)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} failed")
        return JSONResponse({'error': {'code': 'INTERNAL_ERROR', 'message': str(exc)}}, status_code=500)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get('/health')
    async def health(request: Request):
        return {
            'status': 'ok',
            'uptime': int(time.monotonic() - request.app.state.started_at),
            'version': __version__,
        }

    # ------------------------------------------------------------------
    # Deliveries
    # ------------------------------------------------------------------

    @app.post('/api/deliveries', status_code=201)
    async def create_delivery(request: Request, repo: DeliveryRepository = Depends(get_repository),
                              cfg: ServerConfig = Depends(get_config)):
        body = await json_body(request)
        if not body.get('mode') or not body.get('title') or not body.get('content'):
            raise ValidationError('Missing required fields: mode, title, content')

        if body['mode'] == 'alignment':
            result = repo.upsert_alignment(
                body['title'], body['content'], body.get('metadata'),
                body.get('agent_session_id'), body.get('thread_id'),
            )
            delivery = result['delivery']
            return {
                'id': delivery['id'],
                'url': cfg.delivery_url(delivery['id']),
                'replaced_delivery_id': result['replaced_delivery_id'],
            }

        delivery = repo.create(body['mode'], body['title'], body['content'], body.get('metadata'))
        return {'id': delivery['id'], 'url': cfg.delivery_url(delivery['id'])}

    @app.get('/api/deliveries')
    async def list_deliveries(
        mode: Optional[str] = None,
        status: Optional[str] = None,
        agent_session_id: Optional[str] = None,
        limit: Optional[str] = None,
        offset: Optional[str] = None,
        repo: DeliveryRepository = Depends(get_repository),
    ):
        page = repo.list_deliveries(
            status=status,
            mode=mode,
            agent_session_id=agent_session_id,
            limit=_int_param(limit, 'limit', 50),
            offset=_int_param(offset, 'offset', 0),
        )
        return {'deliveries': page['items'], 'total': page['total']}

    @app.get('/api/deliveries/{delivery_id}')
    async def get_delivery(delivery_id: str, repo: DeliveryRepository = Depends(get_repository)):
        return repo.hydrate(delivery_id)

    @app.put('/api/deliveries/{delivery_id}/content')
    async def update_content(delivery_id: str, request: Request,
                             repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        if 'content' not in body:
            raise ValidationError('content is required')
        delivery = repo.update_content(delivery_id, body['content'], body.get('title'))
        return {'delivery_id': delivery_id, 'status': delivery['status'], 'updated_at': delivery['updated_at']}

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    @app.get('/api/deliveries/{delivery_id}/feedback')
    async def list_feedback(delivery_id: str, handled: Optional[str] = None,
                            repo: DeliveryRepository = Depends(get_repository)):
        items = repo.list_feedback(delivery_id, _bool_param(handled, 'handled'))
        return {
            'delivery_id': delivery_id,
            'feedback': items,
            'pending_feedback_count': sum(1 for item in items if not item.get('handled')),
        }

    @app.post('/api/deliveries/{delivery_id}/feedback/draft')
    async def save_drafts(delivery_id: str, request: Request,
                          repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.save_drafts(delivery_id, body.get('items'))

    @app.post('/api/deliveries/{delivery_id}/feedback/commit', status_code=201)
    async def commit_feedback(delivery_id: str, request: Request,
                              repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.commit_feedback(delivery_id, body.get('items'))

    @app.post('/api/deliveries/{delivery_id}/feedback/resolve')
    async def resolve_feedback(delivery_id: str, request: Request,
                               repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.resolve_feedback(delivery_id, body.get('feedback_ids'), body.get('handled_by'))

    @app.post('/api/deliveries/{delivery_id}/feedback/revoke')
    async def revoke_feedback(delivery_id: str, request: Request,
                              repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.revoke_feedback(delivery_id, body.get('feedback_ids'))

    @app.post('/api/deliveries/{delivery_id}/annotate', status_code=201)
    async def annotate(delivery_id: str, request: Request,
                       repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        draft = repo.annotate(delivery_id, body.get('content'), body.get('target'))
        return {'id': draft['id'], 'delivery_id': delivery_id}

    # ------------------------------------------------------------------
    # Execution events
    # ------------------------------------------------------------------

    @app.get('/api/deliveries/{delivery_id}/execution-events')
    async def list_execution_events(delivery_id: str, repo: DeliveryRepository = Depends(get_repository)):
        return {'delivery_id': delivery_id, 'events': repo.list_execution_events(delivery_id)}

    @app.post('/api/deliveries/{delivery_id}/execution-events', status_code=201)
    async def append_execution_events(delivery_id: str, request: Request,
                                      repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        if 'events' in body:
            events = body['events']
        elif 'event' in body:
            events = [body['event']]
        else:
            raise ValidationError('events or event is required')
        created = repo.append_execution_events(delivery_id, events)
        return {'delivery_id': delivery_id, 'events': created, 'count': len(created)}

    # ------------------------------------------------------------------
    # Alignment
    # ------------------------------------------------------------------

    @app.get('/api/alignment/active')
    async def active_alignment(agent_session_id: Optional[str] = None,
                               repo: DeliveryRepository = Depends(get_repository)):
        if not agent_session_id:
            raise ValidationError('agent_session_id is required')
        return repo.active_alignment(agent_session_id)

    @app.post('/api/alignment/upsert', status_code=201)
    async def upsert_alignment(request: Request, repo: DeliveryRepository = Depends(get_repository),
                               cfg: ServerConfig = Depends(get_config)):
        body = await json_body(request)
        result = repo.upsert_alignment(
            body.get('title'), body.get('content'), body.get('metadata'),
            body.get('agent_session_id'), body.get('thread_id'),
        )
        delivery = result['delivery']
        return {
            'id': delivery['id'],
            'url': cfg.delivery_url(delivery['id']),
            'replaced_delivery_id': result['replaced_delivery_id'],
            'thread_id': delivery['thread_id'],
        }

    @app.post('/api/alignment/heartbeat')
    async def alignment_heartbeat(request: Request, repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.heartbeat(body.get('agent_session_id'), body.get('thread_id'))

    @app.post('/api/alignment/cancel')
    async def cancel_alignment(request: Request, repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.cancel_alignment(body.get('agent_session_id'), body.get('thread_id'), body.get('reason'))

    @app.post('/api/alignment/resolve')
    async def resolve_alignment(request: Request, repo: DeliveryRepository = Depends(get_repository)):
        body = await json_body(request)
        return repo.resolve_alignment(body.get('agent_session_id'), body.get('thread_id'), body.get('delivery_id'))

    # ------------------------------------------------------------------
    # Settings and design tokens
    # ------------------------------------------------------------------

    @app.get('/api/settings')
    async def read_settings(repo: DeliveryRepository = Depends(get_repository)):
        return repo.read_settings()

    @app.put('/api/settings')
    async def update_settings(request: Request, repo: DeliveryRepository = Depends(get_repository)):
        return repo.update_settings(await json_body(request))

    @app.get('/api/design-tokens')
    async def design_tokens(repo: DeliveryRepository = Depends(get_repository)):
        return repo.read_design_tokens()

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    @app.websocket('/ws')
    async def live_updates(websocket: WebSocket):
        await websocket.accept()
        state = websocket.app.state
        queue = state.hub.connect(state.repository.list_blocking_pending())
        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                frame = getter.result()
                if frame is SUBSCRIBER_CLOSED:
                    await websocket.close(code=1013)
                    break
                await websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"Live update subscriber dropped: {e}")
        finally:
            receiver.cancel()
            state.hub.disconnect(queue)

    return app


def serve(config: ServerConfig, log_level: str = 'info'):
    """Run the server in the foreground until interrupted."""
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=log_level)
