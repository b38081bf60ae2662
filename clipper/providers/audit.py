"""
HTTP audit mirror for captured clips.

Posts each raw clip to a Firestore collection through the REST API,
authenticated with the signed-in identity's ID token. This is a
best-effort copy: the local store is the source of truth, so every
failure is logged and swallowed here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from ..types import Clip, Identity

logger = logging.getLogger(__name__)

FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"
DEFAULT_TIMEOUT = 10.0


def firestore_document(clip: Clip) -> dict:
    """Encode a clip as a Firestore REST document body."""
    def s(value: str | None) -> dict:
        return {"stringValue": value or ""}

    return {
        "fields": {
            "id": s(clip.id),
            "url": s(clip.url),
            "selectedText": s(clip.selected_text),
            "summary": s(clip.summary),
            "projectId": s(clip.project_id),
            "ownerUid": s(clip.owner_uid),
            "ownerEmail": s(clip.owner_email),
            "createdAt": {
                "timestampValue": datetime.fromtimestamp(
                    clip.created_at / 1000, tz=timezone.utc
                ).isoformat().replace("+00:00", "Z"),
            },
        }
    }


class FirestoreAuditSink:
    """Append-only mirror of raw clips to a Firestore collection."""

    def __init__(
        self,
        project_id: str,
        *,
        collection: str = "clips",
        timeout: float = DEFAULT_TIMEOUT,
        base_url: str = FIRESTORE_BASE_URL,
    ):
        if not project_id:
            raise ValueError("Firestore project_id is required")
        self._path = (
            f"/projects/{project_id}/databases/(default)/documents/{collection}"
        )
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    async def append(self, clip: Clip, identity: Optional[Identity]) -> None:
        """POST the clip. Never raises."""
        if identity is None or not identity.id_token:
            logger.info("Not signed in, skipping audit mirror for %s", clip.id)
            return
        try:
            resp = await self._client.post(
                self._path,
                json=firestore_document(clip),
                headers={"Authorization": f"Bearer {identity.id_token}"},
            )
            resp.raise_for_status()
            data = resp.json()
            if isinstance(data, dict) and data.get("error"):
                raise httpx.HTTPError(f"Firestore error: {data['error']}")
            logger.debug("Mirrored clip %s", clip.id)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Audit mirror failed for clip %s: %s", clip.id, e)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
