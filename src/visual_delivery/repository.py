"""
Delivery repository.

Owns the on-disk layout under ``<data_dir>/data``:

    index.json                              listing projection of every delivery
    settings.json                           platform settings
    deliveries/<id>/delivery.json           delivery record (authoritative)
    deliveries/<id>/feedback.json           committed feedback items
    deliveries/<id>/drafts.json             staged, uncommitted feedback
    deliveries/<id>/execution-events.json   append-only audit trail
    sessions/<agent_session_id>/alignment/active.json
    sessions/<agent_session_id>/alignment/history/<ms>_<delivery_id>.json

Every mutation follows the same sequence: persist the sub-record under its
lock, recompute the delivery status from its feedback, bump ``updated_at``,
write the delivery record, refresh its index entry, then broadcast. The index
may lag the delivery record briefly; the delivery record wins.
"""

import json
import logging
import re
import time
from pathlib import Path
from typing import Callable, Optional

from visual_delivery import transitions
from visual_delivery.errors import Conflict, DeliveryError, NotFound, ValidationError
from visual_delivery.hub import BroadcastHub
from visual_delivery.ids import generate_id
from visual_delivery.models import (
    AlignmentState,
    Delivery,
    DeliveryMode,
    DeliveryStatus,
    DraftItem,
    ExecutionEvent,
    FeedbackItem,
    FeedbackKind,
    content_to_dict,
    index_entry,
    normalize_metadata,
    parse_content,
    parse_enum,
)
from visual_delivery.store import RecordStore
from visual_delivery.timestamps import advance, now_local_iso, parse_iso

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50

DEFAULT_SETTINGS = {
    'platform': {
        'name': 'Visual Delivery',
        'logo_url': '',
        'slogan': 'Turn work into clear decisions.',
        'visual_style': 'executive-brief',
    },
}

REQUIRED_TOKEN_GROUPS = ('colors', 'typography', 'spacing')

_SAFE_KEY = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')


def _require_text(value, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value.strip()


def _require_id_list(value, field_name: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{field_name} must be a non-empty array")
    if not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{field_name} must contain only strings")
    return value


def _sort_key(entry: dict) -> tuple:
    created = parse_iso(entry.get('created_at'))
    return (created.timestamp() if created else 0.0, entry.get('id', ''))


class DeliveryRepository:
    def __init__(
        self,
        data_dir: Path,
        hub: Optional[BroadcastHub] = None,
        store: Optional[RecordStore] = None,
        project_name: Optional[str] = None,
    ):
        self.data_dir = Path(data_dir)
        self.root = self.data_dir / 'data'
        self.deliveries_dir = self.root / 'deliveries'
        self.sessions_dir = self.root / 'sessions'
        self.index_path = self.root / 'index.json'
        self.settings_path = self.root / 'settings.json'
        self.tokens_path = self.data_dir / 'design' / 'tokens.json'
        self.hub = hub if hub is not None else BroadcastHub()
        self.store = store if store is not None else RecordStore()
        self.project_name = project_name or self.data_dir.resolve().parent.name or 'project'

        self.deliveries_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self.store.write(self.index_path, [])

    # ========================================================================
    # Paths
    # ========================================================================

    def delivery_dir(self, delivery_id: str) -> Path:
        if not isinstance(delivery_id, str) or not _SAFE_KEY.match(delivery_id):
            raise NotFound(f"Delivery {delivery_id} not found")
        return self.deliveries_dir / delivery_id

    def delivery_file(self, delivery_id: str, name: str) -> Path:
        return self.delivery_dir(delivery_id) / name

    def _alignment_dir(self, agent_session_id: str) -> Path:
        if not _SAFE_KEY.match(agent_session_id):
            raise ValidationError('agent_session_id contains unsupported characters')
        return self.sessions_dir / agent_session_id / 'alignment'

    def _active_path(self, agent_session_id: str) -> Path:
        return self._alignment_dir(agent_session_id) / 'active.json'

    # ========================================================================
    # Internal helpers
    # ========================================================================

    def _require(self, delivery_id: str) -> dict:
        delivery = self.get(delivery_id)
        if delivery is None:
            raise NotFound(f"Delivery {delivery_id} not found")
        return delivery

    def _read_records(self, delivery_id: str, name: str) -> list:
        """Object entries of a sub-record array; anything else in the file is ignored."""
        return transitions.records(self.store.read_array(self.delivery_file(delivery_id, name)))

    def _broadcast(self, event: str, data):
        self.hub.broadcast(event, data)

    def _write_index_entry(self, delivery: dict) -> dict:
        entry = index_entry(delivery)

        def replace(entries):
            for i, item in enumerate(entries):
                if isinstance(item, dict) and item.get('id') == entry['id']:
                    entries[i] = entry
                    return entries
            entries.append(entry)
            return entries

        self.store.update(self.index_path, replace)
        return entry

    def _refresh(self, delivery_id: str, changes: Optional[Callable[[dict], None]] = None) -> dict:
        """
        Recompute status, apply ``changes`` and bump ``updated_at`` under the
        delivery lock, then refresh the index entry.
        """
        path = self.delivery_file(delivery_id, 'delivery.json')
        feedback_path = self.delivery_file(delivery_id, 'feedback.json')

        def apply(delivery):
            if not delivery:
                raise NotFound(f"Delivery {delivery_id} not found")
            feedback = self.store.read_array(feedback_path)
            if changes:
                changes(delivery)
            delivery['status'] = transitions.derive_status(feedback).value
            delivery['updated_at'] = advance(delivery.get('updated_at'))
            return delivery

        delivery = self.store.update(path, apply, default=dict)
        self._write_index_entry(delivery)
        return delivery

    # ========================================================================
    # Deliveries
    # ========================================================================

    def create(
        self,
        mode: str,
        title: str,
        content,
        metadata: Optional[dict] = None,
        agent_session_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> dict:
        """
        Create a delivery and return its record.

        Alignment deliveries go through ``upsert_alignment`` so that at most one
        is active per agent session.
        """
        mode = parse_enum(DeliveryMode, mode, 'mode')
        if mode is DeliveryMode.ALIGNMENT:
            return self.upsert_alignment(title, content, metadata, agent_session_id, thread_id)['delivery']
        return self._create_record(mode, title, content, metadata)

    def _create_record(
        self,
        mode: DeliveryMode,
        title: str,
        content,
        metadata: Optional[dict],
        agent_session_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> dict:
        title = _require_text(title, 'title')
        parsed_content = parse_content(content)
        now = now_local_iso()

        delivery = Delivery(
            id=generate_id('d'),
            mode=mode,
            title=title,
            content=parsed_content,
            metadata=normalize_metadata(metadata, self.project_name, title),
            agent_session_id=agent_session_id,
            thread_id=thread_id,
            alignment_state=AlignmentState.ACTIVE if mode.is_blocking else None,
            created_at=now,
            updated_at=now,
        ).to_dict()

        self.delivery_dir(delivery['id']).mkdir(parents=True, exist_ok=True)
        self.store.write(self.delivery_file(delivery['id'], 'delivery.json'), delivery)
        for name in ('feedback.json', 'drafts.json', 'execution-events.json'):
            self.store.write(self.delivery_file(delivery['id'], name), [])
        entry = self._write_index_entry(delivery)

        self._broadcast('new_delivery', entry)
        logger.info(f"Delivery {delivery['id']} created ({mode.value}): {title}")
        return delivery

    def get(self, delivery_id: str) -> Optional[dict]:
        try:
            path = self.delivery_file(delivery_id, 'delivery.json')
        except NotFound:
            return None
        return self.store.read_object(path)

    def hydrate(self, delivery_id: str) -> dict:
        """Delivery record with feedback, drafts and execution events attached."""
        delivery = self._require(delivery_id)
        feedback = self._read_records(delivery_id, 'feedback.json')
        drafts = self._read_records(delivery_id, 'drafts.json')
        events = self._read_records(delivery_id, 'execution-events.json')
        return {
            **delivery,
            'feedback': feedback,
            'drafts': drafts,
            'execution_events': events,
            'pending_feedback_count': len(transitions.pending_items(feedback)),
        }

    def list_deliveries(
        self,
        status: Optional[str] = None,
        mode: Optional[str] = None,
        agent_session_id: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> dict:
        """
        List index entries, newest first.

        Returns:
            {'items': [...], 'total': count before paging}
        """
        if limit < 0 or offset < 0:
            raise ValidationError('limit and offset must be non-negative')

        entries = [e for e in self.store.read_array(self.index_path) if isinstance(e, dict)]
        if status:
            status = parse_enum(DeliveryStatus, status, 'status').value
            entries = [e for e in entries if e.get('status') == status]
        if mode:
            mode = parse_enum(DeliveryMode, mode, 'mode').value
            entries = [e for e in entries if e.get('mode') == mode]
        if agent_session_id:
            entries = [e for e in entries if e.get('agent_session_id') == agent_session_id]

        entries.sort(key=_sort_key, reverse=True)
        return {'items': entries[offset:offset + limit], 'total': len(entries)}

    def list_blocking_pending(self) -> list:
        """Blocking deliveries an agent is still waiting on."""
        return [
            e for e in self.store.read_array(self.index_path)
            if isinstance(e, dict)
            and e.get('mode') == DeliveryMode.ALIGNMENT.value
            and e.get('alignment_state') == AlignmentState.ACTIVE.value
        ]

    def update_content(self, delivery_id: str, content, title: Optional[str] = None) -> dict:
        self._require(delivery_id)
        new_content = content_to_dict(parse_content(content))
        new_title = _require_text(title, 'title') if title is not None else None

        def change(delivery):
            delivery['content'] = new_content
            if new_title:
                delivery['title'] = new_title

        delivery = self._refresh(delivery_id, change)
        self._broadcast('update_delivery', index_entry(delivery))
        logger.info(f"Delivery {delivery_id} content updated")
        return delivery

    # ========================================================================
    # Drafts and feedback
    # ========================================================================

    def save_drafts(self, delivery_id: str, items: list) -> dict:
        """Replace the whole draft set."""
        self._require(delivery_id)
        if not isinstance(items, list):
            raise ValidationError('items must be an array')
        now = now_local_iso()
        drafts = [DraftItem.from_input(item, now).to_dict() for item in items]

        self.store.write(self.delivery_file(delivery_id, 'drafts.json'), drafts)
        delivery = self._refresh(delivery_id)
        self._broadcast('update_delivery', index_entry(delivery))
        return {'delivery_id': delivery_id, 'count': len(drafts)}

    def annotate(self, delivery_id: str, content, target=None) -> dict:
        """Stage a single text annotation as a draft item."""
        self._require(delivery_id)
        text = _require_text(content, 'content')
        draft = DraftItem(
            id=generate_id('fd'),
            kind=FeedbackKind.ANNOTATION,
            payload={'text': text},
            target=target,
            created_at=now_local_iso(),
        ).to_dict()

        self.store.update(
            self.delivery_file(delivery_id, 'drafts.json'),
            lambda items: transitions.records(items) + [draft],
        )
        delivery = self._refresh(delivery_id)
        self._broadcast('update_delivery', index_entry(delivery))
        return draft

    def commit_feedback(self, delivery_id: str, items: list) -> dict:
        """
        Commit feedback items and clear the drafts.

        Returns:
            {'delivery_id', 'feedback_ids', 'status'}
        """
        self._require(delivery_id)
        if not isinstance(items, list) or not items:
            raise ValidationError('items must be a non-empty array')
        now = now_local_iso()
        new_items = [FeedbackItem.from_input(item, now).to_dict() for item in items]

        self.store.update(
            self.delivery_file(delivery_id, 'feedback.json'),
            lambda existing: transitions.records(existing) + new_items,
        )
        self.store.write(self.delivery_file(delivery_id, 'drafts.json'), [])
        delivery = self._refresh(delivery_id)

        self._broadcast('feedback_received', {'delivery_id': delivery_id, 'count': len(new_items)})
        self._broadcast('update_delivery', index_entry(delivery))
        logger.info(f"Delivery {delivery_id}: {len(new_items)} feedback item(s) committed")
        return {
            'delivery_id': delivery_id,
            'feedback_ids': [item['id'] for item in new_items],
            'status': delivery['status'],
        }

    def resolve_feedback(self, delivery_id: str, feedback_ids: list, handled_by: Optional[str] = None) -> dict:
        self._require(delivery_id)
        feedback_ids = _require_id_list(feedback_ids, 'feedback_ids')
        handled_by = handled_by if isinstance(handled_by, str) and handled_by.strip() else 'agent'
        now = now_local_iso()
        counter = {'resolved': 0}

        def resolve(items):
            updated, counter['resolved'] = transitions.resolve_items(items, feedback_ids, handled_by, now)
            return updated

        self.store.update(self.delivery_file(delivery_id, 'feedback.json'), resolve)
        delivery = self._refresh(delivery_id)
        self._broadcast('update_delivery', index_entry(delivery))
        if counter['resolved']:
            logger.info(f"Delivery {delivery_id}: {counter['resolved']} feedback item(s) resolved by {handled_by}")
        return {
            'delivery_id': delivery_id,
            'resolved_count': counter['resolved'],
            'status': delivery['status'],
        }

    def revoke_feedback(self, delivery_id: str, feedback_ids: list) -> dict:
        """Delete unhandled feedback items outright. Handled items are kept."""
        self._require(delivery_id)
        feedback_ids = _require_id_list(feedback_ids, 'feedback_ids')
        counter = {'revoked': 0}

        def revoke(items):
            kept, counter['revoked'] = transitions.revoke_items(items, feedback_ids)
            return kept

        self.store.update(self.delivery_file(delivery_id, 'feedback.json'), revoke)
        delivery = self._refresh(delivery_id)
        self._broadcast('update_delivery', index_entry(delivery))
        return {
            'delivery_id': delivery_id,
            'revoked_count': counter['revoked'],
            'status': delivery['status'],
        }

    def list_feedback(self, delivery_id: str, handled: Optional[bool] = None) -> list:
        self._require(delivery_id)
        items = self._read_records(delivery_id, 'feedback.json')
        if handled is None:
            return items
        return [item for item in items if bool(item.get('handled')) is handled]

    # ========================================================================
    # Execution events
    # ========================================================================

    def append_execution_events(self, delivery_id: str, events: list) -> list:
        self._require(delivery_id)
        if not isinstance(events, list) or not events:
            raise ValidationError('events must be a non-empty array')
        now = now_local_iso()
        new_events = [ExecutionEvent.from_input(event, now).to_dict() for event in events]

        self.store.update(
            self.delivery_file(delivery_id, 'execution-events.json'),
            lambda existing: transitions.records(existing) + new_events,
        )
        delivery = self._refresh(delivery_id)
        self._broadcast('execution_events_updated', {'delivery_id': delivery_id, 'events': new_events})
        self._broadcast('update_delivery', index_entry(delivery))
        return new_events

    def list_execution_events(self, delivery_id: str) -> list:
        self._require(delivery_id)
        return self._read_records(delivery_id, 'execution-events.json')

    # ========================================================================
    # Alignment (one blocking delivery per agent session)
    # ========================================================================

    def upsert_alignment(self, title, content, metadata, agent_session_id, thread_id) -> dict:
        """
        Replace the session's active alignment with a new blocking delivery.

        Returns:
            {'delivery': new delivery, 'replaced_delivery_id': id or None}
        """
        if not isinstance(agent_session_id, str) or not agent_session_id \
                or not isinstance(thread_id, str) or not thread_id:
            raise ValidationError('agent_session_id and thread_id are required for alignment')
        active_path = self._active_path(agent_session_id)
        _require_text(title, 'title')
        parse_content(content)

        replaced = self._end_active(agent_session_id, None, AlignmentState.CANCELED, 'replaced_by_new_alignment')
        delivery = self._create_record(
            DeliveryMode.ALIGNMENT, title, content, metadata,
            agent_session_id=agent_session_id, thread_id=thread_id,
        )

        now = now_local_iso()
        self.store.write(active_path, {
            'agent_session_id': agent_session_id,
            'thread_id': thread_id,
            'delivery_id': delivery['id'],
            'status': AlignmentState.ACTIVE.value,
            'created_at': now,
            'last_heartbeat_at': now,
        })
        return {'delivery': delivery, 'replaced_delivery_id': replaced.get('delivery_id')}

    def _archive_alignment(self, agent_session_id: str, record: dict, terminal: AlignmentState,
                           reason: str, ended_at: str):
        history_path = (
            self._alignment_dir(agent_session_id) / 'history'
            / f"{int(time.time() * 1000)}_{record.get('delivery_id')}.json"
        )
        self.store.write(history_path, {
            **record,
            'terminal_state': terminal.value,
            'reason': reason,
            'ended_at': ended_at,
        })

    def _end_active(self, agent_session_id: str, thread_id: Optional[str],
                    terminal: AlignmentState, reason: str) -> dict:
        active_path = self._active_path(agent_session_id)
        record = self.store.read_object(active_path)
        if not record:
            return {'status': 'no_active'}
        if thread_id and record.get('thread_id') != thread_id:
            raise Conflict('thread_id does not match active alignment', code='THREAD_MISMATCH')

        delivery_id = record.get('delivery_id')
        if self.get(delivery_id):
            def change(delivery):
                delivery['alignment_state'] = transitions.end_alignment(delivery.get('alignment_state'), terminal).value

            delivery = self._refresh(delivery_id, change)
            self._broadcast('update_delivery', index_entry(delivery))

        now = now_local_iso()
        self._archive_alignment(agent_session_id, record, terminal, reason, now)
        self.store.delete(active_path)

        self._broadcast('alignment_update', {
            'agent_session_id': agent_session_id,
            'delivery_id': delivery_id,
            'alignment_state': terminal.value,
            'reason': reason,
        })
        logger.info(f"Alignment {delivery_id} for session {agent_session_id} {terminal.value}: {reason}")
        return {'status': terminal.value, 'delivery_id': delivery_id}

    def active_alignment(self, agent_session_id: str) -> dict:
        """
        The session's active alignment with its pending feedback.

        Returns ``{'active': None}`` when there is none.
        """
        _require_text(agent_session_id, 'agent_session_id')
        record = self.store.read_object(self._active_path(agent_session_id))
        if not record:
            return {'active': None}
        try:
            delivery = self.hydrate(record.get('delivery_id'))
        except NotFound:
            return {'active': None}

        pending = transitions.pending_items(delivery['feedback'])
        return {
            'active': {
                **delivery,
                'thread_id': record.get('thread_id'),
                'last_heartbeat_at': record.get('last_heartbeat_at'),
            },
            'pending_feedback_count': len(pending),
            'pending_feedback': pending,
        }

    def heartbeat(self, agent_session_id: str, thread_id: str) -> dict:
        if not isinstance(agent_session_id, str) or not agent_session_id \
                or not isinstance(thread_id, str) or not thread_id:
            raise ValidationError('agent_session_id and thread_id are required')
        now = now_local_iso()

        def beat(record):
            if not record:
                raise NotFound('No active alignment found for session')
            if record.get('thread_id') != thread_id:
                raise Conflict('thread_id does not match active alignment', code='THREAD_MISMATCH')
            record['last_heartbeat_at'] = now
            return record

        self.store.update(self._active_path(agent_session_id), beat, default=dict)
        return {'status': 'ok', 'last_heartbeat_at': now}

    def cancel_alignment(self, agent_session_id: str, thread_id: Optional[str] = None,
                         reason: Optional[str] = None) -> dict:
        _require_text(agent_session_id, 'agent_session_id')
        return self._end_active(agent_session_id, thread_id, AlignmentState.CANCELED, reason or 'thread_closed')

    def resolve_alignment(self, agent_session_id: str, thread_id: Optional[str] = None,
                          delivery_id: Optional[str] = None) -> dict:
        _require_text(agent_session_id, 'agent_session_id')
        record = self.store.read_object(self._active_path(agent_session_id))
        if not record:
            return {'status': 'no_active'}
        if delivery_id and record.get('delivery_id') != delivery_id:
            raise Conflict('delivery_id does not match active alignment', code='DELIVERY_MISMATCH')
        return self._end_active(agent_session_id, thread_id, AlignmentState.RESOLVED, 'agent_received_feedback')

    # ========================================================================
    # Settings and design tokens
    # ========================================================================

    def read_settings(self) -> dict:
        stored = self.store.read_object(self.settings_path) or {}
        platform = stored.get('platform') if isinstance(stored.get('platform'), dict) else {}
        return {'platform': {**DEFAULT_SETTINGS['platform'], **platform}}

    def update_settings(self, updates: dict) -> dict:
        if not isinstance(updates, dict):
            raise ValidationError('settings must be an object')
        platform = updates.get('platform') or {}
        if not isinstance(platform, dict):
            raise ValidationError('settings.platform must be an object')

        def merge(stored):
            current = stored.get('platform') if isinstance(stored.get('platform'), dict) else {}
            return {'platform': {**DEFAULT_SETTINGS['platform'], **current, **platform}}

        settings = self.store.update(self.settings_path, merge, default=dict)
        self._broadcast('settings_updated', settings)
        return settings

    def read_design_tokens(self) -> dict:
        try:
            tokens = json.loads(self.tokens_path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            raise NotFound('Design tokens not found')
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading {self.tokens_path}: {e}")
            raise DeliveryError('Invalid design tokens')
        if not isinstance(tokens, dict):
            raise DeliveryError('Invalid design tokens')
        return tokens


def tokens_complete(tokens: dict) -> bool:
    return all(group in tokens for group in REQUIRED_TOKEN_GROUPS)
