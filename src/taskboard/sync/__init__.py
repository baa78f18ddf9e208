"""
Sync subsystem.

Components:
- reconciler.py: the single owner of task/worker state (push, poll, optimistic)
- connectivity.py: LIVE / DEGRADED mode tracking
- poller.py / push.py: authoritative feeds from the backend
- simulator.py: synthetic progress while the backend is unreachable
- loop.py: cancellable background asyncio task helper
"""
