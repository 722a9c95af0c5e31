"""
RSS source deduplication.

A candidate feed is a duplicate of a registered one when its normalized URL
matches exactly, or when a same-domain source scores above the duplicate
threshold on a weighted combination of edit-distance signals (feed title,
description, site link and feed URL).
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from newsdedup.config.config import SourceDedupConfig
from newsdedup.exceptions import DuplicateSourceError, SourceNotFoundError
from newsdedup.observability.metrics import increment
from newsdedup.protocols import (
    DomainDuplicateGroup,
    FeedMetadata,
    PotentialSourceDuplicates,
    RawSource,
    SourceDuplicateMatch,
    SourceDuplicationCheckResult,
    SourceDuplicationStats,
    SourceStoreProtocol,
)

from .similarity import edit_similarity

logger = structlog.get_logger(__name__)

EXACT_URL_MATCH = "Exact URL match"
DEFAULT_PORTS = {("http", 80), ("https", 443)}


def normalize_url(url: str) -> str:
    """
    Canonical form of a feed URL for comparison.

    Lowercases the host, drops a leading ``www.``, default ports and trailing
    slashes, and sorts query parameters by key. Unparseable input is simply
    lowercased.
    """
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        if not parts.scheme or not host:
            raise ValueError(f"Not an absolute URL: {url!r}")

        scheme = parts.scheme.lower()
        while host.startswith("www."):
            host = host[4:]
        if ":" in host:
            host = f"[{host}]"

        port = parts.port
        netloc = host if port is None or (scheme, port) in DEFAULT_PORTS else f"{host}:{port}"
        if parts.username:
            userinfo = parts.username if parts.password is None else f"{parts.username}:{parts.password}"
            netloc = f"{userinfo}@{netloc}"

        path = parts.path.rstrip("/") or "/"
        params = sorted(parse_qsl(parts.query, keep_blank_values=True), key=lambda kv: kv[0])
        return urlunsplit((scheme, netloc, path, urlencode(params), parts.fragment))
    except ValueError:
        return url.lower()


def extract_domain(url: str) -> str:
    """Host of ``url`` without ``www.``, or an empty string."""
    try:
        host = urlsplit(url.strip()).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def _without_scheme(normalized: str) -> str:
    _, sep, rest = normalized.partition("://")
    return rest if sep else normalized


class SourceDeduplicationEngine:
    """
    Detects RSS feeds that duplicate already registered sources.

    Args:
        store: Source store
        config: Signal gates, weights and thresholds
    """

    def __init__(self, store: SourceStoreProtocol, config: Optional[SourceDedupConfig] = None) -> None:
        self.store = store
        self.config = config or SourceDedupConfig()

    def _signals(self, url: str, metadata: FeedMetadata, existing: RawSource) -> Tuple[float, List[str]]:
        cfg = self.config
        other = existing.metadata
        signals = (
            ("title", metadata.title, other.title, cfg.title_gate, cfg.title_weight),
            ("description", metadata.description, other.description, cfg.description_gate, cfg.description_weight),
            (
                "website link",
                normalize_url(metadata.link) if metadata.link else None,
                normalize_url(other.link) if other.link else None,
                cfg.link_gate,
                cfg.link_weight,
            ),
            ("URL", normalize_url(url), normalize_url(existing.link), cfg.url_gate, cfg.url_weight),
        )

        confidence = 0.0
        reasons: List[str] = []
        for name, ours, theirs, gate, weight in signals:
            if not ours or not theirs:
                continue
            similarity = edit_similarity(ours, theirs)
            if similarity > gate:
                confidence += similarity * weight
                reasons.append(f"{name} similarity: {round(similarity * 100)}%")
        return min(confidence, 1.0), reasons

    def _compare(self, url: str, metadata: FeedMetadata, existing: RawSource) -> Tuple[float, str]:
        """Confidence that a feed at ``url`` duplicates ``existing``."""
        if _without_scheme(normalize_url(url)) == _without_scheme(normalize_url(existing.link)):
            return 1.0, EXACT_URL_MATCH
        confidence, reasons = self._signals(url, metadata, existing)
        return confidence, ", ".join(reasons)

    async def check_source_for_duplicate(
        self, url: str, metadata: Optional[FeedMetadata] = None
    ) -> SourceDuplicationCheckResult:
        """
        Check a candidate feed against the registered sources.

        Store failures are logged and reported as "not a duplicate".
        """
        metadata = metadata or FeedMetadata()
        try:
            result = await self._check(url, metadata)
        except Exception as e:
            logger.error("Source duplicate check failed", url=url, error=str(e))
            increment("source_checks", outcome="error")
            return SourceDuplicationCheckResult(is_duplicate=False, confidence=0.0, reason=f"Check failed: {e}")

        increment("source_checks", outcome="duplicate" if result.is_duplicate else "unique")
        logger.info(
            "Source checked",
            url=url,
            is_duplicate=result.is_duplicate,
            confidence=round(result.confidence, 3),
            existing=result.existing_source.link if result.existing_source else None,
        )
        return result

    async def _check(self, url: str, metadata: FeedMetadata) -> SourceDuplicationCheckResult:
        normalized = normalize_url(url)
        exact = await self.store.find_sources_by_links([url, normalized])
        if exact:
            return SourceDuplicationCheckResult(
                is_duplicate=True, confidence=1.0, existing_source=exact[0], reason=EXACT_URL_MATCH
            )

        domain = extract_domain(url)
        if not domain:
            return SourceDuplicationCheckResult(is_duplicate=False, confidence=0.0, reason="No domain in URL")

        same_domain = await self.store.find_sources_by_domain(domain)
        if not same_domain:
            return SourceDuplicationCheckResult(is_duplicate=False, confidence=0.0)

        best_confidence = 0.0
        best_match: Optional[RawSource] = None
        best_reason = ""
        for source in same_domain:
            confidence, reason = self._compare(url, metadata, source)
            if confidence > best_confidence:
                best_confidence, best_match, best_reason = confidence, source, reason

        return SourceDuplicationCheckResult(
            is_duplicate=best_confidence > self.config.duplicate_threshold,
            confidence=best_confidence,
            existing_source=best_match,
            reason=best_reason or "Content similarity analysis",
        )

    async def find_potential_duplicate_sources(
        self, source_id: str, threshold: Optional[float] = None
    ) -> PotentialSourceDuplicates:
        """
        Same-domain sources that likely duplicate ``source_id``, best first.

        Raises:
            SourceNotFoundError: If no source has this id
        """
        if threshold is None:
            threshold = self.config.potential_duplicate_threshold

        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(f"Source not found: {source_id}")

        domain = extract_domain(source.link)
        others = await self.store.find_sources_by_domain(domain, exclude_id=source.id) if domain else []

        duplicates: List[SourceDuplicateMatch] = []
        for other in others:
            confidence, reason = self._compare(other.link, other.metadata, source)
            if confidence > threshold:
                duplicates.append(
                    SourceDuplicateMatch(source=other, confidence=confidence, reason=reason or "Similarity analysis")
                )

        duplicates.sort(key=lambda d: d.confidence, reverse=True)
        return PotentialSourceDuplicates(source=source, duplicates=duplicates)

    async def get_duplication_stats(self) -> SourceDuplicationStats:
        """Public sources grouped by domain, with the average confidence of likely-duplicate pairs."""
        sources = await self.store.list_sources(public_only=True)

        by_domain: Dict[str, List[RawSource]] = {}
        for source in sources:
            by_domain.setdefault(extract_domain(source.link), []).append(source)

        groups: List[DomainDuplicateGroup] = []
        potential = 0
        for domain, members in by_domain.items():
            if not domain or len(members) < 2:
                continue

            total = 0.0
            pairs = 0
            for i, first in enumerate(members):
                for second in members[i + 1 :]:
                    confidence, _ = self._compare(second.link, second.metadata, first)
                    if confidence > self.config.stats_pair_threshold:
                        total += confidence
                        pairs += 1

            if pairs:
                groups.append(DomainDuplicateGroup(domain=domain, sources=members, avg_confidence=total / pairs))
                potential += len(members)

        groups.sort(key=lambda g: g.avg_confidence, reverse=True)
        return SourceDuplicationStats(total_sources=len(sources), potential_duplicates=potential, duplicate_groups=groups)

    async def register_source(
        self,
        url: str,
        metadata: Optional[FeedMetadata] = None,
        *,
        owner: Optional[str] = None,
        public: bool = False,
    ) -> RawSource:
        """
        Persist a new source unless it duplicates an existing one.

        Raises:
            DuplicateSourceError: If the feed duplicates a registered source
        """
        metadata = metadata or FeedMetadata()
        check = await self.check_source_for_duplicate(url, metadata)
        if check.is_duplicate and check.existing_source is not None:
            raise DuplicateSourceError(check)

        source = RawSource(
            link=url,
            title=metadata.title or "Untitled Source",
            description=metadata.description,
            category="general",
            language="ru",
            public=public,
            owner=owner,
            metadata=metadata,
        )
        created = await self.store.create_source(source)
        logger.info("Registered source", source_id=created.id, url=url)
        return created
