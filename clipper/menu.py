"""
Keeps the "save" trigger surface in step with identity and projects.

The surface is rebuilt from scratch (clear, then create every entry)
whenever the identity, the project list or the default-project
preference changes. Change notifications arrive in bursts, so rebuilds
are single-flight with coalescing:

    IDLE --request--> BUILDING --done, nothing requested--> IDLE
                       |    ^
                       |    | done, rebuild requested: build once more
                       +----+
    request while BUILDING: set the one "rebuild requested" flag

Any number of requests during a build collapse into one follow-up build,
which reads the latest state, so the surface converges without ever
running two builds at once.
"""

import asyncio
import enum
import logging
from typing import Optional

from .errors import MenuEntryExists
from .library import ClipLibrary
from .providers.base import IdentityProvider, MenuEntry, MenuSurface
from .types import Identity, Project

logger = logging.getLogger(__name__)

ROOT_ID = "save_root"
QUICK_ID = "save_quick"
SEPARATOR_ID = "save_sep"
PROJECT_PREFIX = "save_p_"

ROOT_TITLE = "Save with Clipper"
NO_DEFAULT_TITLE = "Save (no default project)"


class MenuState(enum.Enum):
    IDLE = "idle"
    BUILDING = "building"


def project_entry_id(project_id: str) -> str:
    return f"{PROJECT_PREFIX}{project_id}"


def parse_entry_id(entry_id: object) -> Optional[tuple[str, Optional[str]]]:
    """Map a clicked entry id to ("quick", None) or ("project", project_id)."""
    if entry_id == QUICK_ID:
        return "quick", None
    if isinstance(entry_id, str) and entry_id.startswith(PROJECT_PREFIX):
        project_id = entry_id[len(PROJECT_PREFIX):]
        if project_id:
            return "project", project_id
    return None


def plan_entries(
    projects: list[Project],
    default_project: Optional[Project],
) -> list[MenuEntry]:
    """
    The full entry set, root first.

    ``projects`` must already be filtered to the current identity; entries
    are deduplicated by project id here as well.
    """
    quick_title = (
        f"Save to default: {default_project.name}" if default_project else NO_DEFAULT_TITLE
    )
    entries = [
        MenuEntry(ROOT_ID, ROOT_TITLE),
        MenuEntry(QUICK_ID, quick_title, parent_id=ROOT_ID),
        MenuEntry(SEPARATOR_ID, parent_id=ROOT_ID, kind="separator"),
    ]
    seen: set[str] = set()
    for p in projects:
        if not p.id or p.id in seen:
            continue
        seen.add(p.id)
        entries.append(MenuEntry(project_entry_id(p.id), f"Save to: {p.name}", parent_id=ROOT_ID))
    return entries


class MenuSynchronizer:
    """Single-flight, coalescing rebuilds of the trigger surface."""

    def __init__(
        self,
        surface: MenuSurface,
        library: ClipLibrary,
        identity: IdentityProvider,
    ):
        self._surface = surface
        self._library = library
        self._identity = identity
        self._state = MenuState.IDLE
        self._rebuild_requested = False
        self._task: Optional[asyncio.Task] = None
        self.build_count = 0
        self.last_errors: list[str] = []

    @property
    def state(self) -> MenuState:
        return self._state

    def request_rebuild(self) -> asyncio.Task:
        """
        Ask for a rebuild. Must be called from the event loop.

        Returns the task that will perform (or is performing) the build that
        reflects this request.
        """
        if self._state is MenuState.BUILDING:
            self._rebuild_requested = True
            return self._task
        self._state = MenuState.BUILDING
        self._rebuild_requested = False
        self._task = asyncio.create_task(self._run())
        return self._task

    async def rebuild(self) -> None:
        """Request a rebuild and wait until the surface reflects it."""
        await self.request_rebuild()

    async def wait_idle(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        try:
            while True:
                self._rebuild_requested = False
                try:
                    await self._build()
                except Exception as e:
                    logger.error("Menu rebuild failed: %s", e, exc_info=True)
                if not self._rebuild_requested:
                    break
                logger.debug("Coalesced menu rebuild requested during build, rebuilding")
        finally:
            self._state = MenuState.IDLE

    async def _current_plan(self) -> list[MenuEntry]:
        identity: Optional[Identity] = await self._identity.current_identity()
        projects = await self._library.list_projects(identity)
        default_id = await self._library.default_project_id(identity)
        default_project = next((p for p in projects if p.id == default_id), None)
        return plan_entries(projects, default_project)

    async def _build(self) -> list[MenuEntry]:
        self.build_count += 1
        entries = await self._current_plan()
        errors: list[str] = []

        await self._surface.clear()
        created = []
        for entry in entries:
            try:
                await self._surface.create(entry)
            except MenuEntryExists:
                # Benign: a coalesced rebuild raced the surface's own cleanup
                pass
            except Exception as e:
                logger.warning("Menu entry %s not created: %s", entry.id, e)
                errors.append(f"{entry.id}: {e}")
                if entry.id == ROOT_ID:
                    # Children cannot exist without their parent
                    break
                continue
            created.append(entry)

        self.last_errors = errors
        logger.debug("Menu rebuilt with %d entries", len(created))
        return created
