"""
Base provider protocols.

These define the interfaces of the external collaborators the background
service talks to. Using Protocol for structural subtyping - no explicit
inheritance required.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from ..types import CaptureTarget, Clip, Identity


# -----------------------------------------------------------------------------
# Selection access
# -----------------------------------------------------------------------------

@runtime_checkable
class SelectionSource(Protocol):
    """
    Reads the current text selection from a browsing context.

    Example implementation:
        class StaticSelection:
            def __init__(self, text: str):
                self.text = text

            async def extract_selection_text(self, target: CaptureTarget) -> str:
                return self.text
    """

    async def extract_selection_text(self, target: CaptureTarget) -> str:
        """
        Return the selected text in ``target``.

        Args:
            target: The page to read from

        Returns:
            The selection, possibly empty

        Raises:
            Exception: If the page cannot be scripted; callers treat this
                the same as an empty selection
        """
        ...


# -----------------------------------------------------------------------------
# Identity
# -----------------------------------------------------------------------------

@runtime_checkable
class IdentityProvider(Protocol):
    """Reports who is signed in."""

    async def current_identity(self) -> Optional[Identity]:
        """The signed-in identity, or None."""
        ...


# -----------------------------------------------------------------------------
# Annotation endpoint
# -----------------------------------------------------------------------------

@runtime_checkable
class AnnotationEndpoint(Protocol):
    """
    Remote summarization service.

    Returns the raw payload dict (expected keys ``summary`` and ``tags``).
    Validation and normalization are the resolver's job.
    """

    async def summarize(self, text: str, api_key: str) -> dict[str, Any]:
        """
        Raises:
            Exception: On transport failure, timeout or non-success status
            AnnotationParseError: If the response body is not interpretable
        """
        ...


# -----------------------------------------------------------------------------
# Audit mirror
# -----------------------------------------------------------------------------

@runtime_checkable
class AuditSink(Protocol):
    """Best-effort copy of every raw clip to an external log."""

    async def append(self, clip: Clip, identity: Optional[Identity]) -> None:
        ...


# -----------------------------------------------------------------------------
# Trigger surface (context menu)
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class MenuEntry:
    """
    One entry on the trigger surface.

    Attributes:
        id: Stable entry id; clicks are routed by it
        title: Label shown to the user
        parent_id: Parent entry for nested menus
        kind: "normal" or "separator"
    """
    id: str
    title: str = ""
    parent_id: Optional[str] = None
    kind: str = "normal"


@runtime_checkable
class MenuSurface(Protocol):
    """
    The external "save" trigger surface.

    ``create`` raises MenuEntryExists when the id is already present and
    MenuCreationError (or any other exception) for genuine failures.
    """

    async def clear(self) -> None:
        ...

    async def create(self, entry: MenuEntry) -> None:
        ...
