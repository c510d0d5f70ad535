"""
Record types for deliveries and their sub-records.

String-valued fields with a fixed vocabulary are closed enums: unknown values
are rejected at the parse boundary. The one deliberate exception is the
execution-event stage, which falls back to ``info`` so older agents that send
free-form stages keep working.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from visual_delivery.errors import ValidationError
from visual_delivery.ids import generate_id
from visual_delivery.timestamps import ensure_local_iso, now_local_iso


# ============================================================================
# Enumerations
# ============================================================================

class DeliveryMode(str, Enum):
    TASK_DELIVERY = "task_delivery"
    ALIGNMENT = "alignment"

    @property
    def is_blocking(self) -> bool:
        return self is DeliveryMode.ALIGNMENT


class DeliveryStatus(str, Enum):
    NORMAL = "normal"
    PENDING_FEEDBACK = "pending_feedback"


class AlignmentState(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELED = "canceled"


class FeedbackKind(str, Enum):
    ANNOTATION = "annotation"
    INTERACTIVE = "interactive"


class ExecutionStage(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    INFO = "info"

    @classmethod
    def lenient(cls, value) -> 'ExecutionStage':
        try:
            return cls(value)
        except ValueError:
            return cls.INFO


class ContentType(str, Enum):
    UI_SPEC = "ui_spec"
    GENERATED_HTML = "generated_html"


def parse_enum(enum_cls, value, field_name: str):
    """Parse a closed enum value, rejecting anything outside the vocabulary."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}")


# ============================================================================
# Content (tagged union)
# ============================================================================

@dataclass(frozen=True)
class UiSpecContent:
    ui_spec: dict
    type = ContentType.UI_SPEC

    def to_dict(self) -> dict:
        return {'type': self.type.value, 'ui_spec': self.ui_spec}


@dataclass(frozen=True)
class GeneratedHtmlContent:
    html: str
    type = ContentType.GENERATED_HTML

    def to_dict(self) -> dict:
        return {'type': self.type.value, 'html': self.html}


Content = Union[UiSpecContent, GeneratedHtmlContent]

_CONTENT_KEYS = {
    ContentType.UI_SPEC: {'type', 'ui_spec'},
    ContentType.GENERATED_HTML: {'type', 'html'},
}

CONTENT_SHAPES_HINT = 'content must be { type: "ui_spec", ui_spec: {...} } or { type: "generated_html", html: "..." }'


def parse_content(raw: Any) -> Content:
    """Validate a content payload and return the matching variant."""
    if not isinstance(raw, dict):
        raise ValidationError(CONTENT_SHAPES_HINT)
    try:
        content_type = ContentType(raw.get('type'))
    except ValueError:
        raise ValidationError(CONTENT_SHAPES_HINT)

    extra = set(raw) - _CONTENT_KEYS[content_type]
    if extra:
        raise ValidationError(f"Unexpected content fields for {content_type.value}: {', '.join(sorted(extra))}")

    if content_type is ContentType.UI_SPEC:
        ui_spec = raw.get('ui_spec')
        if not isinstance(ui_spec, dict):
            raise ValidationError('content.ui_spec must be an object')
        return UiSpecContent(ui_spec=ui_spec)
    if content_type is ContentType.GENERATED_HTML:
        html = raw.get('html')
        if not isinstance(html, str) or not html.strip():
            raise ValidationError('content.html must be a non-empty string')
        return GeneratedHtmlContent(html=html)
    raise ValidationError(CONTENT_SHAPES_HINT)


def content_to_dict(content: Content) -> dict:
    if isinstance(content, (UiSpecContent, GeneratedHtmlContent)):
        return content.to_dict()
    raise TypeError(f"Unknown content variant: {type(content).__name__}")


# ============================================================================
# Metadata
# ============================================================================

PLACEHOLDER_NAMES = {'', 'untitled', 'untitled project', 'untitled task', 'unknown'}


def _clean_name(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.lower() in PLACEHOLDER_NAMES:
        return None
    return text


def normalize_metadata(metadata: Optional[dict], default_project: str, default_task: str) -> dict:
    """
    Normalize delivery metadata.

    Names are trimmed and placeholder values ("Untitled Project", ...) are
    replaced with the supplied defaults. ``generated_at`` becomes canonical
    local time, or now when it cannot be parsed. Unknown keys pass through.
    """
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise ValidationError('metadata must be an object')

    normalized = dict(metadata)
    normalized['project_name'] = _clean_name(metadata.get('project_name')) or default_project
    normalized['task_name'] = _clean_name(metadata.get('task_name')) or default_task
    normalized['generated_at'] = ensure_local_iso(metadata.get('generated_at'))
    audience = metadata.get('audience')
    normalized['audience'] = audience.strip() if isinstance(audience, str) and audience.strip() else 'stakeholder'
    return normalized


# ============================================================================
# Records
# ============================================================================

@dataclass
class Delivery:
    id: str
    mode: DeliveryMode
    title: str
    content: Content
    metadata: dict = field(default_factory=dict)
    status: DeliveryStatus = DeliveryStatus.NORMAL
    agent_session_id: Optional[str] = None
    thread_id: Optional[str] = None
    alignment_state: Optional[AlignmentState] = None
    created_at: str = field(default_factory=now_local_iso)
    updated_at: str = field(default_factory=now_local_iso)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'mode': self.mode.value,
            'status': self.status.value,
            'title': self.title,
            'content': content_to_dict(self.content),
            'metadata': self.metadata,
            'agent_session_id': self.agent_session_id,
            'thread_id': self.thread_id,
            'alignment_state': self.alignment_state.value if self.alignment_state else None,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


def index_entry(delivery: dict) -> dict:
    """Listing projection of a persisted delivery."""
    return {
        'id': delivery['id'],
        'mode': delivery.get('mode'),
        'status': delivery.get('status'),
        'title': delivery.get('title'),
        'created_at': delivery.get('created_at'),
        'updated_at': delivery.get('updated_at'),
        'metadata': delivery.get('metadata'),
        'agent_session_id': delivery.get('agent_session_id'),
        'alignment_state': delivery.get('alignment_state'),
    }


def _parse_item_fields(item: Any) -> tuple:
    if not isinstance(item, dict):
        raise ValidationError('feedback items must be objects')
    if 'kind' not in item:
        raise ValidationError('feedback item kind is required')
    kind = parse_enum(FeedbackKind, item['kind'], 'kind')
    payload = item.get('payload')
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError('feedback item payload must be an object')
    return kind, payload, item.get('target')


@dataclass
class DraftItem:
    id: str
    kind: FeedbackKind
    payload: dict = field(default_factory=dict)
    target: Any = None
    created_at: str = field(default_factory=now_local_iso)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'payload': self.payload,
            'target': self.target,
            'created_at': self.created_at,
        }

    @classmethod
    def from_input(cls, item: Any, now: str) -> 'DraftItem':
        kind, payload, target = _parse_item_fields(item)
        draft_id = item.get('id')
        if not isinstance(draft_id, str) or not draft_id:
            draft_id = generate_id('fd')
        return cls(
            id=draft_id,
            kind=kind,
            payload=payload,
            target=target,
            created_at=ensure_local_iso(item.get('created_at'), now),
        )


@dataclass
class FeedbackItem:
    id: str
    kind: FeedbackKind
    payload: dict = field(default_factory=dict)
    target: Any = None
    handled: bool = False
    handled_at: Optional[str] = None
    handled_by: Optional[str] = None
    created_at: str = field(default_factory=now_local_iso)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'payload': self.payload,
            'target': self.target,
            'handled': self.handled,
            'handled_at': self.handled_at,
            'handled_by': self.handled_by,
            'created_at': self.created_at,
        }

    @classmethod
    def from_input(cls, item: Any, now: str) -> 'FeedbackItem':
        """Committed items always get a fresh id and start unhandled."""
        kind, payload, target = _parse_item_fields(item)
        return cls(id=generate_id('f'), kind=kind, payload=payload, target=target, created_at=now)


@dataclass
class ExecutionEvent:
    id: str
    stage: ExecutionStage = ExecutionStage.INFO
    message: str = ""
    feedback_id: Optional[str] = None
    actor: str = "agent"
    meta: dict = field(default_factory=dict)
    created_at: str = field(default_factory=now_local_iso)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'feedback_id': self.feedback_id,
            'stage': self.stage.value,
            'message': self.message,
            'actor': self.actor,
            'meta': self.meta,
            'created_at': self.created_at,
        }

    @classmethod
    def from_input(cls, event: Any, now: str) -> 'ExecutionEvent':
        if not isinstance(event, dict):
            raise ValidationError('execution events must be objects')
        message = event.get('message', '')
        if not isinstance(message, str):
            raise ValidationError('execution event message must be a string')
        feedback_id = event.get('feedback_id')
        if feedback_id is not None and not isinstance(feedback_id, str):
            raise ValidationError('execution event feedback_id must be a string or null')
        actor = event.get('actor')
        meta = event.get('meta')
        if meta is not None and not isinstance(meta, dict):
            raise ValidationError('execution event meta must be an object')
        return cls(
            id=generate_id('ev'),
            stage=ExecutionStage.lenient(event.get('stage')),
            message=message,
            feedback_id=feedback_id,
            actor=actor if isinstance(actor, str) and actor else 'agent',
            meta=meta or {},
            created_at=now,
        )
