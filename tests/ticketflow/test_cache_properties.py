"""Property-based tests for the analysis cache.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import asyncio

from hypothesis import given, settings, strategies as st

from ticketflow.analysis.cache import AnalysisCache, compute_content_hash
from ticketflow.analysis.models import AnalysisResult
from ticketflow.state.store import InMemoryWorkflowStore
from ticketflow.tracker.models import Ticket


def run_async(coro):
    return asyncio.run(coro)


@st.composite
def tickets(draw):
    project = draw(st.sampled_from(["PROJ", "CORE", "WEB"]))
    number = draw(st.integers(min_value=1, max_value=99999))
    return Ticket(
        id=f"{project}-{number}",
        title=draw(st.text(max_size=80)),
        description=draw(st.text(max_size=300)),
    )


@given(ticket=tickets())
@settings(max_examples=100)
def test_unchanged_content_hits(ticket):
    cache = AnalysisCache(InMemoryWorkflowStore())
    analysis = AnalysisResult(ticket_id=ticket.id)

    async def scenario():
        await cache.put(ticket.id, compute_content_hash(ticket), analysis)
        return await cache.get(ticket.id, compute_content_hash(ticket.model_copy()))

    assert run_async(scenario()) == analysis


@given(ticket=tickets(), suffix=st.text(min_size=1, max_size=20))
@settings(max_examples=100)
def test_title_edit_misses_and_keeps_old_entry(ticket, suffix):
    cache = AnalysisCache(InMemoryWorkflowStore())
    analysis = AnalysisResult(ticket_id=ticket.id)
    edited = ticket.model_copy(update={"title": ticket.title + suffix})

    async def scenario():
        await cache.put(ticket.id, compute_content_hash(ticket), analysis)
        miss = await cache.get(ticket.id, compute_content_hash(edited))
        old = await cache.get(ticket.id, compute_content_hash(ticket))
        return miss, old

    miss, old = run_async(scenario())
    assert miss is None
    assert old == analysis


@given(ticket=tickets())
@settings(max_examples=100)
def test_hash_length_is_fixed(ticket):
    assert len(compute_content_hash(ticket)) == 16
