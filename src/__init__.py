"""Repair ASAP Lead Bot — website chat assistant for a handyman business.

Architecture Overview
=====================

The conversation itself lives in a hosted assistant service (OpenAI
Assistants v2): it owns the threads, the prompt and the model.  This
package is the glue around it:

1. **TurnHandler** (``src/agent.py``) appends the customer's message (and
   photo) to the thread and starts a run.

2. **RunOrchestrator** (``src/orchestrator.py``) polls the run against a
   hard deadline.  When the run pauses for tool calls it hands the batch to
   the dispatcher and submits the outputs.

3. **ToolDispatcher** (``src/tools/dispatcher.py``) maps each tool name to
   a ``ToolKind`` and runs it: save a lead, list free calendar slots, book
   an appointment.  It never raises; failures become error outputs.

4. **Connectors** (``src/services/``) talk to the CRM (GoHighLevel), Google
   Sheets, the GoHighLevel calendar and a Telegram bot.  They return
   result objects instead of raising.

Routing: turn → run → (requires_action → dispatch → submit)* → completed → reply

Inbound CRM messages (SMS, Yelp, Thumbtack) reuse the same turn through
**InboundResponder**, after the owner-cooldown and reply-delay checks.

Key Design Decisions
--------------------
- **Lead-save policy**: CRM and sheet writes run concurrently; by default a
  lead counts as saved when either sink accepts it (``LEAD_SAVE_POLICY``).
- **Deadline**: a turn never outlives ``RUN_TIMEOUT_SECONDS``; a timed-out
  run is cancelled in the background.
- **Side effects**: notifications, transcript upload and photo forwarding
  go through ``SideEffects`` and can never fail a turn.
- **Resilience**: assistant reads retry with exponential backoff; writes
  and connector calls are attempted once.
- **Dual Interface**: FastAPI server (production) + CLI chat loop.

Package Structure
-----------------
- ``src/agent.py`` — TurnHandler, InboundResponder and service wiring
- ``src/orchestrator.py`` — run polling and the turn error taxonomy
- ``src/config.py`` — configuration from env / SSM
- ``src/models.py`` — pydantic models shared by all layers
- ``src/server.py`` — FastAPI application
- ``src/main.py`` — CLI chat interface
- ``src/services/`` — assistant, CRM, calendar, sheet and notifier clients
- ``src/tools/`` — tool registry and dispatcher
- ``src/api/`` — FastAPI routes and Pydantic schemas
"""
