"""
Clipper

Background core for a "save selected text" browser tool: captures a
selection as a clip, annotates it with a summary and tags, and keeps the
per-project "save" menu in sync with the user's projects.

Quick Start:
    from clipper import ClipperService, MemoryStorage

    service = ClipperService(MemoryStorage(), surface, selection)
    await service.start()
    await service.capture(CaptureTarget(tab_id=1, url="https://example.com"))

Environment Variables:
    CLIPPER_STORE_PATH       - Override default store location (~/.clipper)
    CLIPPER_OPENAI_API_KEY   - API key for the annotation endpoint
    CLIPPER_VERBOSE          - Debug logging to stderr
"""

from .annotation import AnnotationResolver
from .capture import CaptureExecutor
from .config import AnnotationConfig, ClipperConfig, load_or_create_config
from .errors import (
    AnnotationParseError,
    ClipperError,
    MenuCreationError,
    MenuEntryExists,
    StoreWriteExhaustion,
    TransientIOError,
    ValidationError,
)
from .library import ClipLibrary
from .menu import MenuSynchronizer
from .mutator import StoreMutator
from .service import ClipperService
from .storage import MemoryStorage, SqliteStorage
from .types import AnnotationResult, CaptureTarget, Clip, Identity, Project

__version__ = "0.1.0"
__all__ = [
    "AnnotationConfig",
    "AnnotationParseError",
    "AnnotationResolver",
    "AnnotationResult",
    "CaptureExecutor",
    "CaptureTarget",
    "Clip",
    "ClipLibrary",
    "ClipperConfig",
    "ClipperError",
    "ClipperService",
    "Identity",
    "MemoryStorage",
    "MenuCreationError",
    "MenuEntryExists",
    "MenuSynchronizer",
    "Project",
    "SqliteStorage",
    "StoreMutator",
    "StoreWriteExhaustion",
    "TransientIOError",
    "ValidationError",
    "load_or_create_config",
]
