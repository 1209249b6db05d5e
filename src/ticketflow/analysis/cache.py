"""Content-addressed cache of ticket analyses.

An analysis is cached under (ticket id, content hash), where the hash
covers the ticket id, title and description. Editing the title or the
description therefore produces a new key and forces a fresh analysis,
while the entry for the old content stays untouched.

Cache failures never propagate: a corrupt, expired or unreadable entry is
a miss, and a failed write is logged.

Source:
- src/ticketflow/state/store.py (WorkflowStore cache methods)
- src/ticketflow/state/models.py (AnalysisCacheEntry)
"""

import base64
import hashlib
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import PurePosixPath
from typing import List, Optional, Tuple

from pydantic import ValidationError

from ticketflow.analysis.models import AnalysisResult
from ticketflow.state.models import AnalysisCacheEntry, make_cache_key
from ticketflow.state.store import WorkflowStore
from ticketflow.tracker.models import Ticket

logger = logging.getLogger(__name__)

CONTENT_HASH_LENGTH = 16
SIMILAR_SCAN_LIMIT = 100
MIN_TERM_LENGTH = 4


def compute_content_hash(ticket: Ticket) -> str:
    """Hash the identity-bearing content of a ticket.

    Returns:
        The first 16 characters of base64(sha256("id|title|description")).
    """
    payload = f"{ticket.id}|{ticket.title}|{ticket.description}".encode("utf-8")
    digest = hashlib.sha256(payload).digest()
    return base64.b64encode(digest).decode("ascii")[:CONTENT_HASH_LENGTH]


def extract_similarity_terms(title: str, description: str) -> List[str]:
    """Distinct lowercase words longer than three characters, in order."""
    words = re.split(r"\s+", f"{title} {description}".lower())
    seen = dict.fromkeys(w for w in words if len(w) >= MIN_TERM_LENGTH)
    return list(seen)


def similarity_score(analysis: AnalysisResult, terms: List[str]) -> float:
    """Fraction of terms found in the stems of the analysis' affected files."""
    stems = [
        PurePosixPath(f.path.replace("\\", "/")).stem.lower()
        for f in analysis.affected_files
    ]
    matched = sum(1 for term in terms if any(term in stem for stem in stems))
    return matched / max(len(terms), 1)


class AnalysisCache:
    """Analysis cache backed by a WorkflowStore.

    Attributes:
        store: Persistence backend for cache entries.
        ttl: Optional lifetime of new entries; None means no expiry.
    """

    def __init__(self, store: WorkflowStore, ttl: Optional[timedelta] = None):
        self.store = store
        self.ttl = ttl

    async def get(self, ticket_id: str, content_hash: str) -> Optional[AnalysisResult]:
        """Look up a cached analysis.

        A hit refreshes the entry's last_accessed_at. Expired entries are
        removed and reported as a miss.

        Args:
            ticket_id: Ticket key.
            content_hash: Hash from compute_content_hash.

        Returns:
            The cached analysis, or None on a miss.
        """
        cache_key = make_cache_key(ticket_id, content_hash)

        try:
            entry = await self.store.get_cache_entry(cache_key)
            if entry is None:
                return None

            now = datetime.now(timezone.utc)
            if entry.is_expired(now):
                logger.info(
                    "Cached analysis expired",
                    extra={"ticket_id": ticket_id, "cache_key": cache_key},
                )
                await self.store.delete_cache_entry(cache_key)
                return None

            analysis = AnalysisResult.model_validate_json(entry.analysis_json)

            entry.last_accessed_at = now
            await self.store.put_cache_entry(entry)

        except ValidationError as e:
            logger.warning(
                "Discarding unreadable cached analysis",
                extra={"ticket_id": ticket_id, "cache_key": cache_key, "error": str(e)},
            )
            return None
        except Exception as e:
            logger.warning(
                "Error reading analysis from cache",
                extra={"ticket_id": ticket_id, "cache_key": cache_key, "error": str(e)},
            )
            return None

        logger.info(
            "Analysis found in cache",
            extra={"ticket_id": ticket_id, "cache_key": cache_key},
        )
        return analysis

    async def put(
        self,
        ticket_id: str,
        content_hash: str,
        analysis: AnalysisResult,
        ttl: Optional[timedelta] = None,
    ) -> None:
        """Store or refresh a cached analysis.

        Args:
            ticket_id: Ticket key.
            content_hash: Hash from compute_content_hash.
            analysis: Analysis to cache.
            ttl: Lifetime override for this entry; defaults to self.ttl.
        """
        now = datetime.now(timezone.utc)
        lifetime = ttl if ttl is not None else self.ttl
        entry = AnalysisCacheEntry(
            ticket_id=ticket_id,
            content_hash=content_hash,
            analysis_json=analysis.model_dump_json(),
            cached_at=now,
            last_accessed_at=now,
            expires_at=now + lifetime if lifetime is not None else None,
        )

        try:
            await self.store.put_cache_entry(entry)
        except Exception as e:
            logger.warning(
                "Error caching analysis",
                extra={"ticket_id": ticket_id, "cache_key": entry.cache_key, "error": str(e)},
            )
            return

        logger.info(
            "Analysis cached",
            extra={"ticket_id": ticket_id, "cache_key": entry.cache_key},
        )

    async def find_similar(self, ticket: Ticket, limit: int = 3) -> List[AnalysisResult]:
        """Find cached analyses whose affected files match the ticket's words.

        This is a heuristic: it scans the most recently accessed entries
        and ranks them by the fraction of ticket terms found in affected
        file names.

        Args:
            ticket: Ticket to compare against.
            limit: Maximum number of analyses to return.

        Returns:
            Matching analyses, best match first.
        """
        terms = extract_similarity_terms(ticket.title, ticket.description)

        try:
            entries = await self.store.list_cache_entries(SIMILAR_SCAN_LIMIT)
        except Exception as e:
            logger.warning(
                "Error listing cached analyses",
                extra={"ticket_id": ticket.id, "error": str(e)},
            )
            return []

        scored: List[Tuple[float, AnalysisResult]] = []
        for entry in entries:
            try:
                analysis = AnalysisResult.model_validate_json(entry.analysis_json)
            except ValidationError:
                continue
            score = similarity_score(analysis, terms)
            if score > 0:
                scored.append((score, analysis))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [analysis for _, analysis in scored[:limit]]
