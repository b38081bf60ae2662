"""
External collaborators for clipper.

Concrete implementations:
- llm.OpenAIAnnotation: remote summary + tags endpoint
- audit.FirestoreAuditSink: best-effort mirror of raw clips
"""

from .base import (
    AnnotationEndpoint,
    AuditSink,
    IdentityProvider,
    MenuEntry,
    MenuSurface,
    SelectionSource,
)

__all__ = [
    "AnnotationEndpoint",
    "AuditSink",
    "IdentityProvider",
    "MenuEntry",
    "MenuSurface",
    "SelectionSource",
]
