"""Poppa concierge — WhatsApp medication reminders and agent bridge for elders.

Architecture Overview
=====================

Three flows share one set of services built by the FastAPI lifespan:

1. **Reminders** — a cron hits ``/api/notifications/medications`` (or runs
   ``python -m src.main notify``).  The due-window resolver picks the doses
   scheduled within the next few minutes, the dispatcher groups them per
   user, caches the reminder text and sends one WhatsApp template each.

2. **Confirmations** — at 11:59 and 22:00 local time every user with doses
   in that half of the day is asked whether they took them.

3. **Conversation** — Twilio posts inbound WhatsApp messages to
   ``/api/webhook/twilio``.  Unknown senders get a sign-up link; known
   users are answered by the external LLM agent, which receives their
   profile, medications and recent history.

Key Design Decisions
--------------------
- **Graph store**: Neo4j holds users, medications, ``TAKES`` schedules,
  care relationships, intake history and an audit trail of messages.
- **Conversation memory**: Redis lists keyed per user (``chat:phone:…``)
  with a rolling 24h TTL; the agent sees the last ten turns.
- **Time**: every "now" comes from the configured ``POPPA_TIMEZONE``.
- **Failure isolation**: notification batches fan out per user and report
  per-user results; one failed send never stops the batch.
- **Resilience**: the agent client retries timeouts and 5xx answers with
  exponential backoff (3 attempts).

Package Structure
-----------------
- ``src/config.py`` — Centralized configuration from environment variables
- ``src/templates.py`` — Notification types, template ids and message copy
- ``src/server.py`` — FastAPI application and service lifecycle
- ``src/main.py`` — CLI (chat, notify, confirm, init-db)
- ``src/services/`` — Graph store, schedule resolver, memory, Twilio,
  agent client, dispatcher and webhook bridge
- ``src/api/`` — FastAPI routes and Pydantic schemas
"""
