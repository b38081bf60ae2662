"""
Background service: wires storage, capture and the trigger surface.

Inbound events:
- a trigger-surface click      -> handle_menu_click()
- a message from the UI        -> handle_message()
- a storage change notification -> menu rebuild when identity, projects
  or a default-project preference changed

Everything runs on one asyncio event loop; handlers interleave at their
awaits, which is why all collection writes go through the StoreMutator.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from .annotation import AnnotationResolver
from .capture import CaptureExecutor, can_capture
from .config import (
    SETTINGS_KEYS,
    AnnotationConfig,
    AnnotationSettings,
    ClipperConfig,
    load_or_create_config,
)
from .errors import log_exception
from .library import ClipLibrary
from .logging_config import configure_logging
from .menu import MenuSynchronizer, parse_entry_id
from .mutator import MAX_MUTATION_ATTEMPTS, StoreMutator
from .providers.base import (
    AnnotationEndpoint,
    AuditSink,
    IdentityProvider,
    MenuSurface,
    SelectionSource,
)
from .storage import SqliteStorage, Storage
from .types import (
    AUTH_USER_KEY,
    DEFAULT_PROJECT_KEY_PREFIX,
    PROJECTS_KEY,
    CaptureTarget,
    Identity,
)

logger = logging.getLogger(__name__)

SAVE_SELECTION_MESSAGE = "SAVE_SELECTION_FROM_POPUP"


def needs_menu_rebuild(changed: set[str]) -> bool:
    """True if any changed key affects the trigger surface."""
    return any(
        k in (PROJECTS_KEY, AUTH_USER_KEY) or k.startswith(DEFAULT_PROJECT_KEY_PREFIX)
        for k in changed
    )


class StorageIdentityProvider:
    """Reads the signed-in user from the ``authUser`` storage key."""

    def __init__(self, storage: Storage):
        self._storage = storage

    async def current_identity(self) -> Optional[Identity]:
        values = await self._storage.get([AUTH_USER_KEY])
        return Identity.from_dict(values.get(AUTH_USER_KEY))


class ClipperService:
    """
    The clipper background core.

    Example:
        service = ClipperService(storage, surface, selection, endpoint=OpenAIAnnotation())
        await service.start()
        ok = await service.handle_menu_click("save_quick", CaptureTarget(7, url))
    """

    def __init__(
        self,
        storage: Storage,
        surface: MenuSurface,
        selection: SelectionSource,
        *,
        endpoint: Optional[AnnotationEndpoint] = None,
        audit: Optional[AuditSink] = None,
        identity: Optional[IdentityProvider] = None,
        settings: Optional[AnnotationSettings] = None,
        max_attempts: int = MAX_MUTATION_ATTEMPTS,
    ):
        self.storage = storage
        self.mutator = StoreMutator(storage, max_attempts=max_attempts)
        self.library = ClipLibrary(self.mutator)
        self.identity = identity or StorageIdentityProvider(storage)
        self.resolver = AnnotationResolver(endpoint)
        self._settings = settings or AnnotationSettings()
        self.executor = CaptureExecutor(
            self.mutator,
            self.resolver,
            selection,
            self.identity,
            audit=audit,
            config_loader=self.annotation_config,
        )
        self.menu = MenuSynchronizer(surface, self.library, self.identity)
        self._endpoint = endpoint
        self._audit = audit
        self._unsubscribe = None
        self._ops_log_handler = None

    @classmethod
    def open(
        cls,
        surface: MenuSurface,
        selection: SelectionSource,
        store_path: Optional[Path] = None,
    ) -> "ClipperService":
        """
        Open the service over a store directory.

        Loads (or creates) clipper.toml there, applies the logging policy
        and attaches the operations log.
        """
        config = load_or_create_config(Path(store_path) if store_path else None)
        service = cls.from_config(config, surface, selection)
        service._ops_log_handler = configure_logging(config.path)
        return service

    @classmethod
    def from_config(
        cls,
        config: ClipperConfig,
        surface: MenuSurface,
        selection: SelectionSource,
    ) -> "ClipperService":
        """Build a service with SQLite storage and the configured remote providers."""
        from .providers.audit import FirestoreAuditSink
        from .providers.llm import OpenAIAnnotation

        endpoint = OpenAIAnnotation(
            config.annotation.model,
            base_url=config.annotation.base_url,
            timeout=config.annotation.timeout,
        )
        audit = None
        if config.audit.project_id:
            audit = FirestoreAuditSink(
                config.audit.project_id,
                collection=config.audit.collection,
                timeout=config.audit.timeout,
            )
        return cls(
            SqliteStorage(Path(config.database_path)),
            surface,
            selection,
            endpoint=endpoint,
            audit=audit,
            settings=config.annotation,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to storage changes and build the trigger surface."""
        if self._unsubscribe is None:
            self._unsubscribe = self.storage.subscribe(self._on_storage_change)
        await self.menu.rebuild()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.menu.wait_idle()
        await self.executor.drain()
        for provider in (self._endpoint, self._audit):
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        storage_close = getattr(self.storage, "close", None)
        if storage_close is not None:
            storage_close()
        if self._ops_log_handler is not None:
            logging.getLogger("clipper").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def _on_storage_change(self, changed: set[str]) -> None:
        if needs_menu_rebuild(changed):
            self.menu.request_rebuild()

    async def annotation_config(self) -> AnnotationConfig:
        """Current annotation settings; read on every capture so edits apply at once."""
        values = await self.storage.get(SETTINGS_KEYS)
        return AnnotationConfig.from_store(values, self._settings)

    # -------------------------------------------------------------------------
    # Inbound triggers
    # -------------------------------------------------------------------------

    async def capture(self, target: CaptureTarget, project_id: Optional[str] = None) -> bool:
        try:
            return await self.executor.capture(target, project_id)
        except Exception as e:
            path = log_exception(e, "capture")
            logger.error("Capture failed unexpectedly: %s (details in %s)", e, path)
            return False

    async def handle_menu_click(self, entry_id: Any, target: CaptureTarget) -> bool:
        """Route a trigger-surface click to a capture."""
        if target.tab_id is None or not can_capture(target.url):
            return False
        route = parse_entry_id(entry_id)
        if route is None:
            return False
        kind, project_id = route
        if kind == "quick":
            identity = await self.identity.current_identity()
            project_id = await self.library.default_project_id(identity)
        return await self.capture(target, project_id)

    async def handle_message(
        self,
        message: Any,
        target: Optional[CaptureTarget],
    ) -> Optional[dict[str, Any]]:
        """
        Handle a UI message. ``target`` is the active tab, if any.

        Returns the response payload, or None for messages this service
        does not handle.
        """
        if not isinstance(message, dict) or message.get("type") != SAVE_SELECTION_MESSAGE:
            return None
        project_id = message.get("projectId")
        if target is None or target.tab_id is None:
            return {"ok": False}
        ok = await self.capture(target, project_id if isinstance(project_id, str) else None)
        return {"ok": ok}

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover_pending(self) -> int:
        """
        Finish annotation for clips left pending by an interrupted capture.

        Clips still owned by an in-flight capture are skipped. Returns the
        number of clips completed.
        """
        clips = await self.library.clips()
        # Read after the await: a capture may have started while clips loaded
        in_flight = self.executor.in_flight
        pending = [c for c in clips if c.is_pending and c.id not in in_flight]
        completed = 0
        for clip in pending:
            if await self.executor.annotate(clip):
                completed += 1
        if pending:
            logger.info("Recovered %d of %d pending clip(s)", completed, len(pending))
        return completed
