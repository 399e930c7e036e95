"""Daemon core: per-session task executors, command dispatch, and event fan-out.

Everything here runs on a single asyncio event loop. Shared state (the session
registry, executor queues, the subscriber set) is only touched between awaits,
so no locks are used.
"""
