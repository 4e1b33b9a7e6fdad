"""Webhook inbound system.

Receives Square webhooks, verifies their signature, claims each event once,
enriches it from the Square API and fans it out to downstream sinks.
Events that fail end-to-end are ledgered and retried by the sweeper.
"""
