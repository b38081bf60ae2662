"""
Data types for captured clips and projects.

Records are stored as plain JSON-compatible dicts (camelCase keys) so that
any reader of the store sees the same shape. The dataclasses here are the
in-process view; ``to_dict()``/``from_dict()`` convert at the boundary.
"""

import re
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Optional


# Clip annotation lifecycle
AI_STATUS_PENDING = "pending"
AI_STATUS_DONE = "done"
AI_STATUSES = frozenset({AI_STATUS_PENDING, AI_STATUS_DONE})

# Where a clip's summary/tags came from
AI_SOURCES = frozenset({
    "manual", "mock", "fallback", "remote", "disabled", "empty", "error", "import",
})

# Storage keys
CLIPS_KEY = "clips"
PROJECTS_KEY = "projects"
AUTH_USER_KEY = "authUser"
DEFAULT_PROJECT_KEY_PREFIX = "lastActiveProjectId_"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def new_clip_id() -> str:
    return str(uuid.uuid4())


def default_project_key(uid: Optional[str]) -> str:
    """Storage key for an identity's default project preference."""
    return f"{DEFAULT_PROJECT_KEY_PREFIX}{uid or 'anon'}"


def normalize_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    return re.sub(r"\s+", " ", text or "").strip()


def normalize_tag(tag: Any) -> str:
    return str(tag if tag is not None else "").lower().strip()


def normalize_tags(tags: Any) -> list[str]:
    """Lowercase, trim and deduplicate tags, keeping first-seen order.

    Non-list input yields an empty list. Empty tags are dropped.
    """
    if not isinstance(tags, (list, tuple, set, frozenset)):
        return []
    seen: list[str] = []
    for t in tags:
        n = normalize_tag(t)
        if n and n not in seen:
            seen.append(n)
    return seen


@dataclass(frozen=True)
class Identity:
    """The signed-in user, as reported by the identity provider."""
    uid: str
    email: str = ""
    id_token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["Identity"]:
        if not isinstance(data, dict) or not data.get("uid"):
            return None
        return cls(
            uid=str(data["uid"]),
            email=str(data.get("email") or ""),
            id_token=data.get("idToken") or None,
        )


@dataclass
class Project:
    """A named grouping of clips, owned by one identity."""
    id: str
    name: str
    owner_uid: str = ""
    owner_email: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "ownerUid": self.owner_uid,
            "ownerEmail": self.owner_email,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            owner_uid=str(data.get("ownerUid") or ""),
            owner_email=str(data.get("ownerEmail") or ""),
        )


@dataclass
class Clip:
    """
    A captured selection and its annotation.

    Attributes:
        id: Opaque unique identifier
        created_at: Epoch milliseconds
        url: Page the selection came from
        selected_text: The captured text
        summary: Machine-generated (or user-edited) summary
        tags: Lowercase, deduplicated tags
        project_id: Owning project, or None when unassigned
        ai_status: "pending" until the annotation write-back, then "done"
        ai_source: Which annotation tier produced summary/tags
        owner_uid / owner_email: Identity at creation time, never changed
        notes: Free-form user notes
    """
    id: str
    created_at: int
    url: str
    selected_text: str
    summary: str = ""
    tags: list[str] = field(default_factory=list)
    project_id: Optional[str] = None
    ai_status: str = AI_STATUS_PENDING
    ai_source: str = "manual"
    owner_uid: str = ""
    owner_email: str = ""
    notes: str = ""

    def __post_init__(self):
        self.tags = normalize_tags(self.tags)
        self.project_id = self.project_id or None

    @property
    def is_pending(self) -> bool:
        return self.ai_status == AI_STATUS_PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "url": self.url,
            "selectedText": self.selected_text,
            "summary": self.summary,
            "notes": self.notes,
            "tags": list(self.tags),
            "projectId": self.project_id or "",
            "aiStatus": self.ai_status,
            "aiSource": self.ai_source,
            "ownerUid": self.owner_uid,
            "ownerEmail": self.owner_email,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Clip":
        created = data.get("createdAt")
        return cls(
            id=str(data.get("id") or ""),
            created_at=created if isinstance(created, int) else 0,
            url=str(data.get("url") or ""),
            selected_text=str(data.get("selectedText") or ""),
            summary=str(data.get("summary") or ""),
            notes=str(data.get("notes") or ""),
            tags=data.get("tags") or [],
            project_id=data.get("projectId") or None,
            ai_status=data.get("aiStatus") or AI_STATUS_PENDING,
            ai_source=data.get("aiSource") or "manual",
            owner_uid=str(data.get("ownerUid") or ""),
            owner_email=str(data.get("ownerEmail") or ""),
        )


@dataclass(frozen=True)
class AnnotationResult:
    """Output of the annotation resolver."""
    summary: str
    tags: tuple[str, ...]
    source: str

    def with_source(self, source: str) -> "AnnotationResult":
        return replace(self, source=source)


EMPTY_ANNOTATION = AnnotationResult(summary="", tags=(), source="empty")
ERROR_ANNOTATION = AnnotationResult(summary="", tags=(), source="error")


@dataclass(frozen=True)
class CaptureTarget:
    """The browsing context a capture is taken from."""
    tab_id: Optional[int]
    url: str
