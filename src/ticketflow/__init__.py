"""Ticket-to-pull-request workflow orchestration.

This package drives an issue-tracker ticket through analysis, approval,
implementation, validation and pull request creation:
- Per-ticket workflow state machine with optional PostgreSQL persistence
- Content-addressed analysis cache
- Ephemeral workspace isolation for analysis runs
- Context-size optimization before AI calls
- Progress log with best-effort event fan-out
"""
