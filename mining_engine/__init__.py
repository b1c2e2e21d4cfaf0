"""
Mining Slot Engine

Continuous-yield accrual engine for mining slots:
- Exact, floor-rounded time-proportional earnings
- Claims with at-most-once crediting per accrual window
- Batch finalization of expired slots
- Periodic checkpointing of in-progress earnings
- Redis read-through cache and WebSocket live updates
"""

__version__ = "0.1.0"
