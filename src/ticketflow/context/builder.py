"""Code context assembly for the AI prompts.

SemanticContextBuilder turns a ticket into the raw code context string
the orchestrator optimizes and sends to the AI. It prefers the code
indexer's SemanticContext; when the indexer fails it falls back to a
plain text search through the version control client.

Source:
- src/ticketflow/context/indexer.py (SemanticContext, extract_search_terms)
- src/ticketflow/context/optimizer.py (ContextOptimizer.summarize)
"""

import asyncio
import logging
from pathlib import PurePosixPath
from typing import Any, List, Optional

from ticketflow.context.indexer import (
    SemanticContext,
    extract_search_terms,
    should_ignore,
)
from ticketflow.context.optimizer import ContextOptimizer
from ticketflow.tracker.models import Ticket

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 50000
MAX_SEMANTIC_FILES = 5
SUMMARIZE_THRESHOLD_CHARS = 5000

SEARCHED_TERMS = 3
FILES_PER_TERM = 2
MAX_SEARCH_FILES = 10
SEARCH_FILE_MAX_CHARS = 10000
COMPONENT_LIMIT = 2
FILES_PER_COMPONENT = 2

CONTEXT_TRUNCATED_LINE = "\n# ... (additional context truncated)\n"


class SemanticContextBuilder:
    """Builds the code context string for a ticket.

    Attributes:
        indexer: Code indexer providing build_semantic_context.
        vcs: Default version control client for the text-search fallback.
        optimizer: Context optimizer used to outline large files.
        ignore_patterns: Path fragments excluded from the text search.
    """

    def __init__(
        self,
        indexer: Any,
        vcs: Any,
        optimizer: Optional[ContextOptimizer] = None,
        ignore_patterns: Optional[List[str]] = None,
    ):
        self.indexer = indexer
        self.vcs = vcs
        self.optimizer = optimizer or ContextOptimizer()
        self.ignore_patterns = list(ignore_patterns or [])

    async def build(self, ticket: Ticket, vcs: Any = None) -> str:
        """Return the raw code context for a ticket.

        Args:
            ticket: Ticket to gather code for.
            vcs: Client bound to the working tree to read. Defaults to the
                builder's own client.
        """
        repository = vcs if vcs is not None else self.vcs
        try:
            semantic = await self.indexer.build_semantic_context(ticket, repository)
        except Exception as e:
            logger.warning(
                "Semantic context failed, falling back to text search",
                extra={"ticket_id": ticket.id, "error": str(e)},
            )
            return await self.build_text_search_context(ticket, repository)

        return self.format_semantic_context(semantic)

    def format_semantic_context(self, semantic: SemanticContext) -> str:
        """Structured outline followed by the top files, capped in size."""
        parts = [semantic.structured_text]
        size = len(semantic.structured_text)

        ranked = sorted(
            semantic.relevant_files, key=lambda f: f.relevance_score, reverse=True
        )
        for relevant in ranked[:MAX_SEMANTIC_FILES]:
            content = semantic.file_contents.get(relevant.path)
            if content is None:
                continue
            if len(content) > SUMMARIZE_THRESHOLD_CHARS:
                content = self.optimizer.summarize(relevant.path, content)

            block = (
                f"\n# File: {relevant.path} (relevance: {relevant.relevance_score:.2f})\n"
                f"# Reasons: {'; '.join(relevant.reasons)}\n"
                f"{content}\n"
            )
            if size + len(block) > MAX_CONTEXT_CHARS:
                parts.append(CONTEXT_TRUNCATED_LINE)
                break
            parts.append(block)
            size += len(block)

        return "".join(parts)

    async def build_text_search_context(self, ticket: Ticket, vcs: Any = None) -> str:
        """Context from files found by searching for the ticket's terms."""
        repository = vcs if vcs is not None else self.vcs
        terms = extract_search_terms(ticket)[:SEARCHED_TERMS]
        results = await asyncio.gather(
            *(repository.search_in_files(term, "*.py") for term in terms),
            return_exceptions=True,
        )

        selected: List[str] = []
        for term, result in zip(terms, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Text search failed",
                    extra={"term": term, "error": str(result)},
                )
                continue
            matches = [p for p in result if not should_ignore(p, self.ignore_patterns)]
            for path in matches[:FILES_PER_TERM]:
                if path not in selected and len(selected) < MAX_SEARCH_FILES:
                    selected.append(path)

        if ticket.components:
            selected.extend(
                p for p in await self._component_files(repository, ticket.components)
                if p not in selected
            )

        contents = await asyncio.gather(
            *(self._read_truncated(repository, path) for path in selected)
        )

        parts = [f"## Code Context for {ticket.id} (text search)\n"]
        size = len(parts[0])
        for path, content in zip(selected, contents):
            if content is None:
                continue
            block = f"\n# File: {path}\n{content}\n"
            if size + len(block) > MAX_CONTEXT_CHARS:
                parts.append(CONTEXT_TRUNCATED_LINE)
                break
            parts.append(block)
            size += len(block)

        logger.info(
            "Built text search context",
            extra={"ticket_id": ticket.id, "file_count": len(selected), "context_length": size},
        )
        return "".join(parts)

    async def _component_files(self, repository: Any, components: List[str]) -> List[str]:
        try:
            candidates = await repository.list_files("*.py")
        except Exception as e:
            logger.warning("Listing files failed", extra={"error": str(e)})
            return []

        files: List[str] = []
        for component in components[:COMPONENT_LIMIT]:
            needle = component.lower()
            matches = [
                p
                for p in candidates
                if needle in PurePosixPath(p).name.lower()
                and not should_ignore(p, self.ignore_patterns)
            ]
            files.extend(m for m in matches[:FILES_PER_COMPONENT] if m not in files)
        return files

    async def _read_truncated(self, repository: Any, path: str) -> Optional[str]:
        try:
            content = await repository.read_file(path)
        except (OSError, ValueError) as e:
            logger.warning("Error reading file", extra={"path": path, "error": str(e)})
            return None
        return content[:SEARCH_FILE_MAX_CHARS]
