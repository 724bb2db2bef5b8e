"""Sync orchestration engine.

Process state machine (process_manager), queue intents (queue_manager),
dual-strategy pagination (driver), workflow entry points (orchestrator),
mapping-based idempotency (mappings, activity) and task routing (handlers).
"""
