"""Ticket analysis: AI agent, result models and the analysis cache."""
