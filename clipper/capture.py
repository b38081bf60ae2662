"""
Capture executor: one "save selection" action, end to end.

    1. reject pages we cannot script (scheme not http/https/file)
    2. read the selection; an empty selection never creates a clip
    3. build a pending clip owned by the current identity
    4. insert it at the head of the clips collection   <- decides success
    5. mirror the raw clip to the audit sink (fire-and-forget)
    6. resolve summary + tags (failures become source "error")
    7. write the annotation back onto the same clip, aiStatus "done"

If the process dies between 4 and 7 the clip stays "pending";
ClipperService.recover_pending() finishes it later.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional
from urllib.parse import urlparse

from .annotation import AnnotationResolver
from .config import AnnotationConfig
from .errors import StoreWriteExhaustion, log_exception
from .mutator import StoreMutator
from .providers.base import AuditSink, IdentityProvider, SelectionSource
from .types import (
    AI_STATUS_DONE,
    AI_STATUS_PENDING,
    CLIPS_KEY,
    ERROR_ANNOTATION,
    AnnotationResult,
    CaptureTarget,
    Clip,
    Identity,
    new_clip_id,
    normalize_text,
    now_ms,
)

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https", "file"})

ConfigLoader = Callable[[], Awaitable[AnnotationConfig]]


def can_capture(url: Optional[str]) -> bool:
    """True if a page at ``url`` can have its selection read."""
    try:
        scheme = urlparse(url or "").scheme
    except ValueError:
        return False
    return scheme.lower() in ALLOWED_SCHEMES


def _apply_annotation(clip_id: str, result: AnnotationResult):
    """Mutation: set the annotation on a still-pending clip. Returns (clips, applied)."""
    def apply(clips):
        applied = False
        updated = []
        for c in clips:
            if (isinstance(c, dict) and c.get("id") == clip_id
                    and c.get("aiStatus", AI_STATUS_PENDING) == AI_STATUS_PENDING):
                c = {
                    **c,
                    "summary": result.summary or "",
                    "tags": list(result.tags),
                    "aiStatus": AI_STATUS_DONE,
                    "aiSource": result.source,
                }
                applied = True
            updated.append(c)
        return updated, applied
    return apply


class CaptureExecutor:
    """Runs capture actions against the clips collection."""

    def __init__(
        self,
        mutator: StoreMutator,
        resolver: AnnotationResolver,
        selection: SelectionSource,
        identity: IdentityProvider,
        *,
        audit: Optional[AuditSink] = None,
        config_loader: Optional[ConfigLoader] = None,
    ):
        self._mutator = mutator
        self._resolver = resolver
        self._selection = selection
        self._identity = identity
        self._audit = audit
        self._config_loader = config_loader
        self._in_flight: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def audit(self) -> Optional[AuditSink]:
        return self._audit

    @property
    def in_flight(self) -> frozenset[str]:
        """Ids of clips whose annotation write-back has not finished."""
        return frozenset(self._in_flight)

    async def capture(self, target: CaptureTarget, project_id: Optional[str] = None) -> bool:
        """
        Save the current selection in ``target``.

        Returns:
            True once the pending clip is stored, whatever happens to its
            annotation afterwards. False if the target is ineligible, the
            selection is empty, or the clip could not be stored.
        """
        if not can_capture(target.url):
            logger.debug("Refusing capture from %r", target.url)
            return False

        try:
            selected = await self._selection.extract_selection_text(target)
        except Exception as e:
            logger.info("Could not read selection from %s: %s", target.url, e)
            selected = ""
        selected = (selected or "").strip()
        if not normalize_text(selected):
            return False

        identity = await self._identity.current_identity()
        clip = Clip(
            id=new_clip_id(),
            created_at=now_ms(),
            url=target.url or "",
            selected_text=selected,
            project_id=project_id if isinstance(project_id, str) else None,
            ai_status=AI_STATUS_PENDING,
            ai_source="manual",
            owner_uid=identity.uid if identity else "",
            owner_email=identity.email if identity else "",
        )

        try:
            await self._mutator.mutate(CLIPS_KEY, lambda clips: [clip.to_dict()] + clips)
        except StoreWriteExhaustion as e:
            logger.error("Capture from %s not saved: %s", target.url, e)
            return False
        logger.info("Captured clip %s (%d chars)", clip.id, len(selected))

        self._mirror(clip, identity)
        await self.annotate(clip)
        return True

    async def annotate(self, clip: Clip) -> bool:
        """
        Resolve and write back the annotation for a stored pending clip.

        Returns True if the clip was updated (False if it was deleted or
        already annotated meanwhile, or the write-back failed).
        """
        self._in_flight.add(clip.id)
        try:
            result = await self._resolve(clip.selected_text)
            try:
                applied = await self._mutator.mutate_with_result(
                    CLIPS_KEY, _apply_annotation(clip.id, result)
                )
            except StoreWriteExhaustion as e:
                logger.error("Annotation for clip %s not saved, left pending: %s", clip.id, e)
                return False
            except Exception as e:
                # The clip is already stored; it stays pending for recover_pending()
                path = log_exception(e, f"annotation write-back for clip {clip.id}")
                logger.error(
                    "Annotation for clip %s not saved, left pending: %s (details in %s)",
                    clip.id, e, path,
                )
                return False
        finally:
            self._in_flight.discard(clip.id)

        if not applied:
            logger.info("Clip %s gone or already annotated, write-back skipped", clip.id)
        return applied

    async def _resolve(self, text: str) -> AnnotationResult:
        try:
            config = await self._config_loader() if self._config_loader else AnnotationConfig()
            return await self._resolver.resolve(text, config)
        except Exception as e:
            logger.error("Annotation failed: %s", e, exc_info=True)
            return ERROR_ANNOTATION

    # -------------------------------------------------------------------------
    # Audit mirror
    # -------------------------------------------------------------------------

    def _mirror(self, clip: Clip, identity: Optional[Identity]) -> None:
        if self._audit is None:
            return
        task = asyncio.create_task(self._audit_append(clip, identity))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _audit_append(self, clip: Clip, identity: Optional[Identity]) -> None:
        try:
            await self._audit.append(clip, identity)
        except Exception as e:
            logger.warning("Audit mirror failed for clip %s: %s", clip.id, e)

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget work (used at shutdown)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
