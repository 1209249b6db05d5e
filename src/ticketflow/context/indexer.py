"""Keyword and ast based code indexer for Python repositories.

PythonCodeIndexer builds a symbol index of a repository once per
repository path, keeping the most recently used few, then ranks symbols
against a ticket to produce a SemanticContext: the most relevant symbols,
the files that hold them, a structured outline, and the contents of the
top files.

Scoring per symbol, summed over the ticket's search terms:
- +10 when the symbol name equals a term
- +5 for each term the symbol name contains
- +2 for each term the module path contains
- +3 when the name contains one of the ticket's components
"""

import ast
import asyncio
import logging
import os
from collections import OrderedDict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ticketflow.tracker.models import Ticket

logger = logging.getLogger(__name__)

MAX_INDEXED_FILES = 500
MAX_RELEVANT_SYMBOLS = 15
MAX_RELEVANT_FILES = 10
MAX_FILE_CONTENTS = 5
MAX_FILE_CONTENT_CHARS = 10000
MAX_TITLE_TERMS = 5
MAX_CACHED_INDEXES = 8

FILE_TRUNCATED_MARKER = "\n# ... (file truncated)"

# Score for files reached only through an inheritance relationship
RELATED_FILE_SCORE = 0.5


class SymbolKind(str, Enum):
    CLASS = "class"
    FUNCTION = "function"


class CodeSymbol(BaseModel):
    """A top-level class or function found in the repository.

    Attributes:
        name: The symbol's name as it appears in code.
        kind: Class or function.
        file_path: Repository-relative path of the defining file.
        line_number: Line number where the symbol is defined.
        module: Dotted module path derived from file_path.
        bases: Base class expressions, for classes.
        methods: Method names, for classes.
        docstring: First line of the docstring, if any.
    """

    name: str
    kind: SymbolKind
    file_path: str
    line_number: int = Field(default=1, ge=1)
    module: str = ""
    bases: List[str] = Field(default_factory=list)
    methods: List[str] = Field(default_factory=list)
    docstring: Optional[str] = None


class SymbolRelationship(BaseModel):
    """A class inheriting from another indexed class."""

    from_symbol: str
    to_symbol: str
    file_path: str
    line_number: int = 1


class RelevantFile(BaseModel):
    path: str
    relevance_score: float = 0.0
    reasons: List[str] = Field(default_factory=list)


class CodeIndex(BaseModel):
    repository_path: str
    indexed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    symbols: List[CodeSymbol] = Field(default_factory=list)
    file_count: int = 0


class SemanticContext(BaseModel):
    """Code context selected for a ticket.

    Attributes:
        relevant_files: Top files ranked by relevance.
        relevant_symbols: Top symbols ranked by relevance.
        relationships: Inheritance links from the relevant symbols.
        structured_text: Markdown outline of the relevant symbols.
        file_contents: Contents of the highest ranked files, by path.
    """

    relevant_files: List[RelevantFile] = Field(default_factory=list)
    relevant_symbols: List[CodeSymbol] = Field(default_factory=list)
    relationships: List[SymbolRelationship] = Field(default_factory=list)
    structured_text: str = ""
    file_contents: Dict[str, str] = Field(default_factory=dict)


def should_ignore(path: str, ignore_patterns: List[str]) -> bool:
    """True when path contains any ignore pattern (trailing / and * dropped)."""
    lowered = path.lower()
    for pattern in ignore_patterns:
        fragment = pattern.rstrip("/*").lower()
        if fragment and fragment in lowered:
            return True
    return False


def module_path(file_path: str) -> str:
    """Convert "pkg/sub/mod.py" to "pkg.sub.mod" ("pkg/__init__.py" to "pkg")."""
    parts = file_path.replace("\\", "/").split("/")
    if parts[-1].endswith(".py"):
        parts[-1] = parts[-1][:-3]
    if parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(p for p in parts if p)


def extract_search_terms(ticket: Ticket) -> List[str]:
    """Search terms from a ticket: long title words, labels and components."""
    title_words = [
        word.strip(".,:;!?()[]{}\"'")
        for word in ticket.title.split()
    ]
    terms = [w for w in title_words if len(w) > 3][:MAX_TITLE_TERMS]
    terms.extend(ticket.labels)
    terms.extend(ticket.components)

    seen = set()
    unique = []
    for term in terms:
        if term and term not in seen:
            seen.add(term)
            unique.append(term)
    return unique


def extract_symbols(file_path: str, source: str) -> List[CodeSymbol]:
    """Extract top-level classes and functions from Python source.

    Raises:
        SyntaxError: If the source does not parse.
    """
    tree = ast.parse(source, filename=file_path)
    module = module_path(file_path)
    symbols: List[CodeSymbol] = []

    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            symbols.append(
                CodeSymbol(
                    name=node.name,
                    kind=SymbolKind.CLASS,
                    file_path=file_path,
                    line_number=node.lineno,
                    module=module,
                    bases=[ast.unparse(base) for base in node.bases],
                    methods=[
                        item.name
                        for item in node.body
                        if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
                    ],
                    docstring=_first_line(ast.get_docstring(node)),
                )
            )
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            symbols.append(
                CodeSymbol(
                    name=node.name,
                    kind=SymbolKind.FUNCTION,
                    file_path=file_path,
                    line_number=node.lineno,
                    module=module,
                    docstring=_first_line(ast.get_docstring(node)),
                )
            )
    return symbols


def _first_line(docstring: Optional[str]) -> Optional[str]:
    if not docstring:
        return None
    return docstring.strip().splitlines()[0]


def relevance_score(symbol: CodeSymbol, terms: List[str], components: List[str]) -> float:
    name = symbol.name.lower()
    module = symbol.module.lower()
    lowered_terms = [t.lower() for t in terms]

    score = 0.0
    if name in lowered_terms:
        score += 10
    for term in lowered_terms:
        if term in name:
            score += 5
        if term in module:
            score += 2
    if any(c.lower() in name for c in components if c):
        score += 3
    return score


def _matches(symbol: CodeSymbol, term: str) -> bool:
    term = term.lower()
    return (
        term in symbol.name.lower()
        or term in symbol.module.lower()
        or any(term in m.lower() for m in symbol.methods)
    )


def build_structured_text(
    symbols: List[CodeSymbol], relationships: List[SymbolRelationship]
) -> str:
    """Render relevant symbols grouped by module, largest group first."""
    lines = ["## Relevant Project Structure", ""]

    groups: Dict[str, List[CodeSymbol]] = {}
    for symbol in symbols:
        groups.setdefault(symbol.module, []).append(symbol)

    for module, members in sorted(groups.items(), key=lambda item: -len(item[1])):
        lines += [f"### Module: {module}", ""]
        for symbol in members:
            lines.append(f"#### {symbol.kind.value}: {symbol.name}")
            lines.append(f"- File: {symbol.file_path}")
            lines.append(f"- Line: {symbol.line_number}")
            if symbol.bases:
                lines.append(f"- Inherits from: {', '.join(symbol.bases)}")
            if symbol.methods:
                lines.append(f"- Methods: {', '.join(symbol.methods[:5])}")
            if symbol.docstring:
                lines.append(f"- Summary: {symbol.docstring}")
            lines.append("")

    if relationships:
        lines += ["## Relationships", ""]
        for rel in relationships[:10]:
            lines.append(
                f"- {rel.from_symbol} inherits {rel.to_symbol} "
                f"({rel.file_path}:{rel.line_number})"
            )
        lines.append("")

    return "\n".join(lines)


class PythonCodeIndexer:
    """Code indexer over the version control client's working tree.

    Attributes:
        vcs: Default version control client providing list_files and
            read_file. Callers may pass a client bound to another tree.
        ignore_patterns: Path fragments excluded from indexing.
        max_concurrency: Bound on concurrent file reads and parses.
    """

    def __init__(
        self,
        vcs: Any,
        ignore_patterns: Optional[List[str]] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.vcs = vcs
        self.ignore_patterns = list(ignore_patterns or [])
        self.max_concurrency = max_concurrency or (os.cpu_count() or 1) * 2
        self._indexes: "OrderedDict[str, CodeIndex]" = OrderedDict()
        self._build_locks: Dict[str, asyncio.Lock] = {}

    async def index_repository(self, vcs: Any = None) -> CodeIndex:
        """Return the index for the client's repository path, building it once.

        Builds for different paths run concurrently; builds for one path
        are shared.
        """
        repository = vcs if vcs is not None else self.vcs
        repository_path = repository.repository_path

        lock = self._build_locks.setdefault(repository_path, asyncio.Lock())
        try:
            async with lock:
                index = self._indexes.get(repository_path)
                if index is None:
                    index = await self._build_index(repository, repository_path)
                    self._indexes[repository_path] = index
                self._indexes.move_to_end(repository_path)
                while len(self._indexes) > MAX_CACHED_INDEXES:
                    self._indexes.popitem(last=False)
                return index
        finally:
            if not lock.locked() and self._build_locks.get(repository_path) is lock:
                del self._build_locks[repository_path]

    async def _build_index(self, repository: Any, repository_path: str) -> CodeIndex:
        files = [
            path
            for path in await repository.list_files("*.py")
            if not should_ignore(path, self.ignore_patterns)
        ][:MAX_INDEXED_FILES]

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def index_file(path: str) -> List[CodeSymbol]:
            async with semaphore:
                try:
                    source = await repository.read_file(path)
                    return await asyncio.to_thread(extract_symbols, path, source)
                except (OSError, SyntaxError, ValueError) as e:
                    logger.warning(
                        "Skipping unparseable file",
                        extra={"path": path, "error": str(e)},
                    )
                    return []

        results = await asyncio.gather(*(index_file(path) for path in files))
        symbols = [symbol for file_symbols in results for symbol in file_symbols]

        logger.info(
            "Indexed repository",
            extra={
                "repository_path": repository_path,
                "file_count": len(files),
                "symbol_count": len(symbols),
            },
        )
        return CodeIndex(
            repository_path=repository_path, symbols=symbols, file_count=len(files)
        )

    async def build_semantic_context(
        self, ticket: Ticket, vcs: Any = None
    ) -> SemanticContext:
        """Rank indexed symbols against the ticket and load the top files."""
        repository = vcs if vcs is not None else self.vcs
        index = await self.index_repository(repository)
        terms = extract_search_terms(ticket)

        candidates: Dict[tuple, CodeSymbol] = {}
        for term in terms:
            for symbol in index.symbols:
                if _matches(symbol, term):
                    candidates.setdefault((symbol.file_path, symbol.name), symbol)

        scored = sorted(
            candidates.values(),
            key=lambda s: relevance_score(s, terms, ticket.components),
            reverse=True,
        )
        relevant_symbols = scored[:MAX_RELEVANT_SYMBOLS]

        files: Dict[str, RelevantFile] = {}
        for symbol in relevant_symbols:
            if symbol.file_path not in files:
                files[symbol.file_path] = RelevantFile(
                    path=symbol.file_path,
                    relevance_score=relevance_score(symbol, terms, ticket.components),
                    reasons=[f"Contains {symbol.kind.value} '{symbol.name}'"],
                )

        relationships = self._find_relationships(relevant_symbols, index)
        for rel in relationships:
            if rel.file_path not in files:
                files[rel.file_path] = RelevantFile(
                    path=rel.file_path,
                    relevance_score=RELATED_FILE_SCORE,
                    reasons=[f"Related via inheritance from {rel.from_symbol}"],
                )

        relevant_files = sorted(
            files.values(), key=lambda f: f.relevance_score, reverse=True
        )[:MAX_RELEVANT_FILES]

        file_contents = await self._load_contents(
            repository, relevant_files[:MAX_FILE_CONTENTS]
        )

        logger.info(
            "Built semantic context",
            extra={
                "ticket_id": ticket.id,
                "term_count": len(terms),
                "symbol_count": len(relevant_symbols),
                "file_count": len(relevant_files),
            },
        )
        return SemanticContext(
            relevant_files=relevant_files,
            relevant_symbols=relevant_symbols,
            relationships=relationships,
            structured_text=build_structured_text(relevant_symbols, relationships),
            file_contents=file_contents,
        )

    def _find_relationships(
        self, symbols: List[CodeSymbol], index: CodeIndex
    ) -> List[SymbolRelationship]:
        classes = {s.name: s for s in index.symbols if s.kind == SymbolKind.CLASS}
        relationships = []
        for symbol in symbols[:10]:
            for base in symbol.bases:
                target = classes.get(base.split(".")[-1])
                if target is not None and target is not symbol:
                    relationships.append(
                        SymbolRelationship(
                            from_symbol=symbol.name,
                            to_symbol=target.name,
                            file_path=target.file_path,
                            line_number=target.line_number,
                        )
                    )
        return relationships

    async def _load_contents(
        self, repository: Any, files: List[RelevantFile]
    ) -> Dict[str, str]:
        async def load(path: str) -> Optional[str]:
            try:
                content = await repository.read_file(path)
            except (OSError, ValueError) as e:
                logger.warning("Error reading file", extra={"path": path, "error": str(e)})
                return None
            if len(content) > MAX_FILE_CONTENT_CHARS:
                content = content[:MAX_FILE_CONTENT_CHARS] + FILE_TRUNCATED_MARKER
            return content

        contents = await asyncio.gather(*(load(f.path) for f in files))
        return {
            f.path: content for f, content in zip(files, contents) if content is not None
        }
