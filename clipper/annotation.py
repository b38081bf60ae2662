"""
Annotation resolver: summary and tags for captured text.

Resolution is an ordered chain of tiers; the first tier that produces a
usable result wins:

    empty input      -> {"", [], "empty"}         (no further work)
    AI disabled      -> heuristic, "disabled"
    no API key       -> heuristic, "mock" or "fallback"
    remote endpoint  -> "remote"; any failure falls through to the
                        no-API-key heuristic

Whatever happens inside a tier stays inside the resolver: transport
errors, timeouts, bad status codes and unparsable bodies all end in the
heuristic tier, which cannot fail.
"""

import logging
import re
from typing import Optional, Protocol, runtime_checkable

from .config import AnnotationConfig
from .providers.base import AnnotationEndpoint
from .types import EMPTY_ANNOTATION, AnnotationResult, normalize_tags, normalize_text

logger = logging.getLogger(__name__)

# Remote input is capped to bound cost and latency
INPUT_CAP = 4000

SUMMARY_MAX = 160
REMOTE_SUMMARY_MAX = 600
MAX_TAGS = 5
MIN_TAGS = 3
FILLER_TAGS = ("note", "clip", "snippet")

_SENTENCE_BREAK = re.compile(r"(?<=[.?!])\s+")
_KEYWORD = re.compile(r"\b[a-z]{4,}\b")


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def heuristic_summary(text: str, max_length: int = SUMMARY_MAX) -> str:
    """First sentence of ``text``, or its prefix when there is no sentence break."""
    clean = normalize_text(text)
    first = _SENTENCE_BREAK.split(clean, maxsplit=1)[0]
    return _truncate(first, max_length)


def keyword_tags(text: str, limit: int = MAX_TAGS) -> list[str]:
    """Unique lowercase alphabetic words of 4+ letters, in order of appearance."""
    tags: list[str] = []
    for word in _KEYWORD.findall(text.lower()):
        if word not in tags:
            tags.append(word)
            if len(tags) >= limit:
                break
    return tags


def pad_tags(tags: list[str], candidates: tuple[str, ...] = ()) -> list[str]:
    """Top ``tags`` up to MIN_TAGS from ``candidates``, then filler tags."""
    padded = list(tags)
    for t in (*candidates, *FILLER_TAGS):
        if len(padded) >= MIN_TAGS:
            break
        if t not in padded:
            padded.append(t)
    return padded


def heuristic_annotation(text: str, source: str) -> AnnotationResult:
    """Local summary and tags; never fails and never touches the network."""
    return AnnotationResult(
        summary=heuristic_summary(text),
        tags=tuple(pad_tags(keyword_tags(text))),
        source=source,
    )


# -----------------------------------------------------------------------------
# Tiers
# -----------------------------------------------------------------------------

@runtime_checkable
class Annotator(Protocol):
    """One tier of the chain. Returns None to let the next tier try."""

    async def annotate(self, text: str) -> Optional[AnnotationResult]:
        ...


class HeuristicAnnotator:
    """First-sentence summary and keyword tags, labelled with ``source``."""

    def __init__(self, source: str):
        self.source = source

    async def annotate(self, text: str) -> Optional[AnnotationResult]:
        return heuristic_annotation(text, self.source)


class RemoteAnnotator:
    """Calls the remote endpoint; falls through on any failure or empty summary."""

    def __init__(self, endpoint: AnnotationEndpoint, api_key: str):
        self._endpoint = endpoint
        self._api_key = api_key

    async def annotate(self, text: str) -> Optional[AnnotationResult]:
        try:
            payload = await self._endpoint.summarize(text[:INPUT_CAP], self._api_key)
        except Exception as e:
            logger.warning("Remote annotation failed, using fallback: %s", e)
            return None

        summary = str(payload.get("summary") or "").strip()
        if not summary:
            logger.info("Remote annotation returned an empty summary, using fallback")
            return None

        tags = normalize_tags(payload.get("tags"))[:MAX_TAGS]
        tags = pad_tags(tags, tuple(keyword_tags(text)))
        return AnnotationResult(
            summary=_truncate(summary, REMOTE_SUMMARY_MAX),
            tags=tuple(tags),
            source="remote",
        )


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------

class AnnotationResolver:
    """
    Produces {summary, tags, source} for captured text.

    Args:
        endpoint: Remote summarization endpoint. When None the remote tier
            is never attempted, as if no API key were configured.
    """

    def __init__(self, endpoint: Optional[AnnotationEndpoint] = None):
        self._endpoint = endpoint

    @property
    def endpoint(self) -> Optional[AnnotationEndpoint]:
        return self._endpoint

    def tiers(self, config: AnnotationConfig) -> list[Annotator]:
        """The ordered tier chain for ``config``."""
        if config.ai_disabled:
            return [HeuristicAnnotator("disabled")]
        fallback = HeuristicAnnotator("mock" if config.use_mock_if_fail else "fallback")
        if not config.api_key or self._endpoint is None:
            return [fallback]
        return [RemoteAnnotator(self._endpoint, config.api_key), fallback]

    async def resolve(
        self,
        text: str,
        config: Optional[AnnotationConfig] = None,
    ) -> AnnotationResult:
        """
        Annotate ``text`` under ``config``.

        Never raises for tier failures; the last tier is a heuristic that
        always answers.
        """
        clean = normalize_text(text)
        if not clean:
            return EMPTY_ANNOTATION

        config = config or AnnotationConfig()
        capped = clean[:INPUT_CAP]
        chain = self.tiers(config)
        for tier in chain:
            try:
                result = await tier.annotate(capped)
            except Exception as e:
                logger.warning("Annotation tier %s failed: %s", type(tier).__name__, e)
                continue
            if result is not None and result.summary and result.source != "error":
                return result

        # Unreachable with the built-in tiers; the heuristic always answers
        return heuristic_annotation(capped, "fallback")
