"""
Clip and project collection operations.

These are the edits a user makes after capture: creating and deleting
projects, moving, tagging, editing, deleting and reordering clips, and
importing clips exported elsewhere. Every change is a whole-collection
read-modify-write through the StoreMutator, so they are safe to run
concurrently with captures and with each other.

Readers must treat a clip whose project no longer exists as unassigned;
``project_for()`` does that.
"""

import logging
import random
import re
import string
from collections.abc import Iterable
from typing import Any, Optional

from .errors import ValidationError
from .mutator import StoreMutator
from .types import (
    AI_SOURCES,
    AI_STATUS_DONE,
    CLIPS_KEY,
    PROJECTS_KEY,
    Clip,
    Identity,
    Project,
    default_project_key,
    new_clip_id,
    normalize_tag,
    normalize_tags,
    now_ms,
)

logger = logging.getLogger(__name__)


def make_project_id(name: str) -> str:
    """Slug of ``name`` plus a short random suffix, e.g. ``reading-list-k3x9``."""
    slug = re.sub(r"\s+", "-", name.strip().lower())
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"{slug}-{suffix}"


def project_for(clip: Clip, projects: Iterable[Project]) -> Optional[Project]:
    """The clip's project, or None if unassigned or the project is gone."""
    if not clip.project_id:
        return None
    for p in projects:
        if p.id == clip.project_id:
            return p
    return None


def _imported_clip(raw: Any, project_id: str, identity: Optional[Identity]) -> dict:
    """Sanitize one imported clip into the stored shape."""
    raw = raw if isinstance(raw, dict) else {}
    created = raw.get("createdAt")
    source = raw.get("aiSource")
    clip = Clip(
        id=new_clip_id(),
        created_at=created if isinstance(created, int) and not isinstance(created, bool) else now_ms(),
        url=str(raw.get("url") or ""),
        selected_text=str(raw.get("selectedText") or ""),
        summary=str(raw.get("summary") or ""),
        notes=str(raw.get("notes") or ""),
        tags=normalize_tags(raw.get("tags")),
        project_id=project_id,
        ai_status=AI_STATUS_DONE,
        ai_source=source if source in AI_SOURCES else "import",
        owner_uid=identity.uid if identity else "",
        owner_email=identity.email if identity else "",
    )
    return clip.to_dict()


def _import_batches(data: Any) -> list[dict]:
    """Accept {project, clips}, {projects: [...]} or a bare list of those."""
    if isinstance(data, dict) and isinstance(data.get("projects"), list):
        batches = data["projects"]
    elif isinstance(data, list):
        batches = data
    elif isinstance(data, dict) and ("project" in data or "clips" in data):
        batches = [data]
    else:
        batches = []
    batches = [b for b in batches if isinstance(b, dict)]
    if not batches:
        raise ValidationError("Unsupported JSON shape for import")
    return batches


class ClipLibrary:
    """User-facing operations on the clips and projects collections."""

    def __init__(self, mutator: StoreMutator):
        self._mutator = mutator

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def clips(self) -> list[Clip]:
        return [Clip.from_dict(c) for c in await self._mutator.read_all(CLIPS_KEY)
                if isinstance(c, dict)]

    async def projects(self) -> list[Project]:
        return [Project.from_dict(p) for p in await self._mutator.read_all(PROJECTS_KEY)
                if isinstance(p, dict)]

    async def get_clip(self, clip_id: str) -> Optional[Clip]:
        for clip in await self.clips():
            if clip.id == clip_id:
                return clip
        return None

    async def list_projects(self, identity: Optional[Identity]) -> list[Project]:
        """Projects owned by ``identity``, first occurrence of each id."""
        uid = identity.uid if identity else None
        seen: set[str] = set()
        result = []
        for p in await self.projects():
            if uid and p.owner_uid == uid and p.id and p.id not in seen:
                seen.add(p.id)
                result.append(p)
        return result

    async def list_clips(
        self,
        identity: Optional[Identity],
        project_id: Optional[str] = None,
    ) -> list[Clip]:
        """Clips owned by ``identity``, newest first, optionally for one project."""
        uid = identity.uid if identity else ""
        return [
            c for c in await self.clips()
            if c.owner_uid == uid and (project_id is None or c.project_id == project_id)
        ]

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------

    async def create_project(self, name: str, identity: Optional[Identity]) -> Project:
        if identity is None:
            raise ValidationError("Sign in to create projects")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required")

        project = Project(
            id=make_project_id(name),
            name=name,
            owner_uid=identity.uid,
            owner_email=identity.email,
        )
        await self._mutator.mutate(PROJECTS_KEY, lambda ps: ps + [project.to_dict()])
        logger.info("Created project %s", project.id)
        return project

    async def delete_project(self, project_id: str) -> tuple[bool, int]:
        """
        Delete a project and every clip assigned to it.

        Returns:
            (whether the project existed, number of clips deleted)
        """
        if not project_id:
            return False, 0

        def apply(cols):
            projects = cols[PROJECTS_KEY]
            clips = cols[CLIPS_KEY]
            owners = [p.get("ownerUid") for p in projects
                      if isinstance(p, dict) and p.get("id") == project_id]
            kept_projects = [p for p in projects
                             if not (isinstance(p, dict) and p.get("id") == project_id)]
            kept_clips = [c for c in clips
                          if not (isinstance(c, dict) and c.get("projectId") == project_id)]
            return (
                {PROJECTS_KEY: kept_projects, CLIPS_KEY: kept_clips},
                (owners, len(clips) - len(kept_clips)),
            )

        owners, removed = await self._mutator.mutate_many([PROJECTS_KEY, CLIPS_KEY], apply)
        for uid in owners:
            await self._clear_default_if(uid, project_id)
        if owners:
            logger.info("Deleted project %s and %d clip(s)", project_id, removed)
        return bool(owners), removed

    # -------------------------------------------------------------------------
    # Default project preference
    # -------------------------------------------------------------------------

    async def default_project_id(self, identity: Optional[Identity]) -> Optional[str]:
        """The stored default, if it names a project the identity still owns."""
        key = default_project_key(identity.uid if identity else None)
        stored = (await self._mutator.storage.get([key])).get(key) or ""
        if not stored:
            return None
        owned = {p.id for p in await self.list_projects(identity)}
        return stored if stored in owned else None

    async def set_default_project(
        self,
        identity: Optional[Identity],
        project_id: Optional[str],
    ) -> None:
        key = default_project_key(identity.uid if identity else None)
        await self._mutator.mutate_value(key, lambda _: project_id or "")

    async def _clear_default_if(self, uid: Optional[str], project_id: str) -> None:
        await self._mutator.mutate_value(
            default_project_key(uid),
            lambda current: "" if current == project_id else current,
        )

    # -------------------------------------------------------------------------
    # Clip edits
    # -------------------------------------------------------------------------

    async def _update_clips(self, ids: Iterable[str], change) -> int:
        """Apply ``change(dict) -> dict`` to clips whose id is in ``ids``."""
        wanted = set(ids)

        def apply(clips):
            count = 0
            updated = []
            for c in clips:
                if isinstance(c, dict) and c.get("id") in wanted:
                    c = change(dict(c))
                    count += 1
                updated.append(c)
            return updated, count

        return await self._mutator.mutate_with_result(CLIPS_KEY, apply)

    async def move_clips(self, clip_ids: Iterable[str], project_id: Optional[str]) -> int:
        """Reassign clips to ``project_id`` (None or "" unassigns)."""
        target = project_id or ""
        return await self._update_clips(clip_ids, lambda c: {**c, "projectId": target})

    async def edit_clip(
        self,
        clip_id: str,
        *,
        summary: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> bool:
        changes = {}
        if summary is not None:
            changes["summary"] = summary
        if notes is not None:
            changes["notes"] = notes
        if not changes:
            return False
        return await self._update_clips([clip_id], lambda c: {**c, **changes}) > 0

    async def add_tag(self, clip_id: str, tag: str) -> bool:
        t = normalize_tag(tag)
        if not t:
            return False
        return await self._update_clips(
            [clip_id], lambda c: {**c, "tags": normalize_tags([*(c.get("tags") or []), t])}
        ) > 0

    async def remove_tag(self, clip_id: str, tag: str) -> bool:
        t = normalize_tag(tag)
        return await self._update_clips(
            [clip_id],
            lambda c: {**c, "tags": [x for x in normalize_tags(c.get("tags")) if x != t]},
        ) > 0

    async def delete_clips(self, clip_ids: Iterable[str]) -> int:
        wanted = set(clip_ids)

        def apply(clips):
            kept = [c for c in clips if not (isinstance(c, dict) and c.get("id") in wanted)]
            return kept, len(clips) - len(kept)

        return await self._mutator.mutate_with_result(CLIPS_KEY, apply)

    async def reorder_clip(
        self,
        clip_id: str,
        direction: str,
        visible_ids: Optional[list[str]] = None,
    ) -> bool:
        """
        Move a clip one place up or down among ``visible_ids``.

        ``visible_ids`` is the order the user sees (a filtered view); the
        clip is moved to its neighbour's position in the full collection.
        Defaults to the full collection order.
        """
        if direction not in ("up", "down"):
            raise ValidationError(f"Unknown direction: {direction!r}")

        def apply(clips):
            ids = [c.get("id") for c in clips if isinstance(c, dict)]
            view = visible_ids if visible_ids is not None else ids
            if clip_id not in view:
                return clips, False
            idx = view.index(clip_id)
            target = idx - 1 if direction == "up" else idx + 1
            if target < 0 or target >= len(view):
                return clips, False
            other = view[target]
            if clip_id not in ids or other not in ids:
                return clips, False
            i_a, i_b = ids.index(clip_id), ids.index(other)
            reordered = list(clips)
            moved = reordered.pop(i_a)
            reordered.insert(i_b, moved)
            return reordered, True

        return await self._mutator.mutate_with_result(CLIPS_KEY, apply)

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    async def import_projects(self, data: Any, identity: Optional[Identity]) -> tuple[int, int]:
        """
        Import exported projects and clips.

        Each batch becomes a new project owned by the importer; its clips get
        fresh ids, the importer's owner fields and aiStatus "done".

        Returns:
            (projects created, clips imported)

        Raises:
            ValidationError: If ``data`` has no recognizable batches
        """
        batches = _import_batches(data)
        new_projects = []
        new_clips = []
        for batch in batches:
            name = str(batch.get("name") or batch.get("project") or "").strip()
            if not name:
                name = "Imported " + "".join(random.choices(string.ascii_lowercase, k=4))
            project = Project(
                id=make_project_id(name),
                name=name,
                owner_uid=identity.uid if identity else "",
                owner_email=identity.email if identity else "",
            )
            new_projects.append(project.to_dict())
            clips = batch.get("clips")
            for raw in clips if isinstance(clips, list) else []:
                new_clips.append(_imported_clip(raw, project.id, identity))

        def apply(cols):
            return {
                PROJECTS_KEY: cols[PROJECTS_KEY] + new_projects,
                CLIPS_KEY: new_clips + cols[CLIPS_KEY],
            }, None

        await self._mutator.mutate_many([PROJECTS_KEY, CLIPS_KEY], apply)
        logger.info("Imported %d clip(s) across %d project(s)", len(new_clips), len(new_projects))
        return len(new_projects), len(new_clips)
