"""
Visual Delivery - hand agent work to a human reviewer and wait for feedback.

A local server keeps deliveries, feedback and execution events in a
crash-safe JSON store and pushes live updates to viewers; agents block on a
delivery through the ``await-feedback`` command.
"""

__version__ = "2.0.0"

__all__ = ["__version__"]
