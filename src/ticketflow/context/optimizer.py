"""Context-size optimization for AI prompts.

Compresses a code-context bundle to a character budget before it is sent
to the AI service, and produces outlines of large files.

Guarantees:
- optimize() returns its input unchanged when it already fits the budget
- otherwise the result is at most max_size + len(TRUNCATION_MARKER) long
"""

import logging
import re
from typing import Iterable, List

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_SIZE = 30000
SUMMARY_MAX_LINES = 100
SUMMARY_EDGE_LINES = 20
MAX_BLANK_RUN = 2
MAX_COMMENT_LENGTH = 100

TRUNCATION_MARKER = "\n# ... (context truncated for optimization)\n"
BLOCK_COMMENT_MARKER = "# ... (block comment)"
OMITTED_MARKER = "# ... (middle of file omitted) ..."

_BLOCK_DELIMITERS = (("/*", "*/"), ('"""', '"""'), ("'''", "'''"))
_LINE_COMMENT_PREFIXES = ("//", "#")

_STRUCTURE_PATTERNS = (
    # Python
    re.compile(r"^\s*(?:async\s+)?(class|def)\s+(\w+)"),
    # C-family type declarations
    re.compile(
        r"^\s*(?:public|private|protected|internal)\s+(?:\w+\s+)*?"
        r"(class|interface|struct|enum)\s+(\w+)"
    ),
    # C-family members
    re.compile(
        r"^\s*(?:public|private|protected|internal)\s+(?:\w+\s+)+?()(\w+)\s*\("
    ),
)


class ContextOptimizer:
    """Shrinks code context to a character budget.

    The optimizer collapses blank-line runs, replaces block comments and
    docstrings with a one-line marker, truncates long line comments, and
    finally keeps whole lines greedily until the budget is spent.

    Example:
        >>> optimizer = ContextOptimizer()
        >>> small = optimizer.optimize("def f():\\n    return 1", max_size=100)
        >>> small == "def f():\\n    return 1"
        True
    """

    def optimize(self, context: str, max_size: int = DEFAULT_MAX_CONTEXT_SIZE) -> str:
        """Fit a context bundle into max_size characters.

        Args:
            context: Raw context text.
            max_size: Character budget.

        Returns:
            The context unchanged if it fits, otherwise a compressed
            version of at most max_size + len(TRUNCATION_MARKER) characters.
        """
        if len(context) <= max_size:
            return context

        lines = self._strip_comments(self._collapse_blank_lines(context.split("\n")))

        kept: List[str] = []
        current_size = 0
        truncated = False
        for line in lines:
            line_size = len(line) + 1
            if current_size + line_size > max_size:
                truncated = True
                break
            kept.append(line)
            current_size += line_size

        result = "\n".join(kept)
        if truncated:
            result += TRUNCATION_MARKER

        logger.info(
            "Context optimized",
            extra={
                "original_size": len(context),
                "optimized_size": len(result),
                "max_size": max_size,
                "truncated": truncated,
            },
        )
        return result

    def summarize(
        self,
        file_path: str,
        content: str,
        max_lines: int = SUMMARY_MAX_LINES,
    ) -> str:
        """Outline a large file instead of sending it whole.

        Args:
            file_path: Path shown in the outline header.
            content: Full file content.
            max_lines: Files with at most this many lines are returned as-is.

        Returns:
            The content, or an outline with the structure, the first and
            the last SUMMARY_EDGE_LINES lines.
        """
        lines = content.split("\n")
        if len(lines) <= max_lines:
            return content

        parts = [
            f"# File: {file_path} (summarized - {len(lines)} total lines)",
            "# Structure:",
        ]
        parts.extend(self._extract_structure(lines))
        parts += ["", "# First lines:"]
        parts.extend(lines[:SUMMARY_EDGE_LINES])
        parts += ["", OMITTED_MARKER, "", "# Last lines:"]
        parts.extend(lines[-SUMMARY_EDGE_LINES:])
        return "\n".join(parts) + "\n"

    @staticmethod
    def _collapse_blank_lines(lines: Iterable[str]) -> List[str]:
        result: List[str] = []
        blank_run = 0
        for line in lines:
            if line.strip():
                blank_run = 0
                result.append(line)
                continue
            blank_run += 1
            if blank_run <= MAX_BLANK_RUN:
                result.append(line)
        return result

    @staticmethod
    def _strip_comments(lines: Iterable[str]) -> List[str]:
        result: List[str] = []
        closing = None

        for line in lines:
            stripped = line.strip()

            if closing is not None:
                if stripped.endswith(closing):
                    closing = None
                continue

            opener = next(
                (pair for pair in _BLOCK_DELIMITERS if stripped.startswith(pair[0])),
                None,
            )
            if opener is not None:
                start, end = opener
                result.append(BLOCK_COMMENT_MARKER)
                body = stripped[len(start):]
                if not body.endswith(end):
                    closing = end
                continue

            if (
                stripped.startswith(_LINE_COMMENT_PREFIXES)
                and len(stripped) > MAX_COMMENT_LENGTH
            ):
                result.append(stripped[:MAX_COMMENT_LENGTH] + " ...")
                continue

            result.append(line)

        return result

    @staticmethod
    def _extract_structure(lines: Iterable[str]) -> List[str]:
        structure: List[str] = []
        for line in lines:
            for pattern in _STRUCTURE_PATTERNS:
                match = pattern.match(line)
                if match is None:
                    continue
                kind, name = match.group(1), match.group(2)
                indent = len(line) - len(line.lstrip())
                if kind in ("class", "interface", "struct", "enum"):
                    structure.append(f"#   {' ' * indent}{kind} {name}")
                else:
                    structure.append(f"#     {' ' * indent}{name}")
                break
        return structure
