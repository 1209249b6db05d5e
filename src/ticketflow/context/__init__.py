"""Code context for AI prompts.

- indexer.py: Python code indexer scoring symbols against a ticket
- builder.py: Semantic context assembly with a text-search fallback
- optimizer.py: Character-budget compression and file outlines
"""
