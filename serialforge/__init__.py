"""
SerialForge - serialized fiction orchestration engine.

Drives a story from premise to a target number of installments while keeping
canon, arcs, pacing and prose quality consistent across hundreds of them.
"""

__version__ = "0.1.0"
