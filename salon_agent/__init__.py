"""Salon booking assistant: a conversational front desk for a beauty salon.

Architecture Overview
=====================

Every message goes through one **turn**:

    store.get → classify intent → settle pending booking → build instructions
    → LangGraph loop (agent ⇄ tools) → append history → store.save

- **Session context** (``models``): identity, working memory (selected
  services, preferred date and time, the appointment being worked on, the
  pending booking attempt, a tool log) and a bounded transcript.  Persisted
  as one record per session; turns for a session never overlap.
- **Intent** (``intent``): an ordered rule chain, no model involved.
  A new-booking request always wins over a stale active appointment.
- **Prompts** (``prompts``): one template per intent, never showing ids.
- **Tools** (``tools``): typed arguments with a recovery step, executed
  behind a boundary that turns every failure into a structured result.
- **Booking attempts** (``booking``): a small state machine; a conflict
  waits for a staff "force", which re-submits the same call.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain-anthropic``; the tool loop is a LangGraph
  StateGraph compiled once and fed a fresh message list each turn.
- **Backend**: the salon's GraphQL API over ``httpx`` with exponential
  backoff retries.  The service catalog is cached for an hour and served
  stale when the backend is down.
- **Storage**: in-memory for development and tests, DynamoDB in production.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``salon_agent/agent.py``: orchestrator and LangGraph turn loop
- ``salon_agent/intent.py``: intent classifier
- ``salon_agent/prompts.py``: instruction templates
- ``salon_agent/booking.py``: booking attempt state machine
- ``salon_agent/models.py``: session context models
- ``salon_agent/config.py``: configuration from environment / SSM
- ``salon_agent/server.py``: FastAPI application
- ``salon_agent/main.py``: CLI chat interface
- ``salon_agent/services/``: backend client, catalog, cache, session store, metrics
- ``salon_agent/tools/``: tool specs, argument models and the registry
- ``salon_agent/api/``: FastAPI routes and Pydantic schemas
"""
