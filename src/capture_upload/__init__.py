"""Capture upload pipeline.

Moves captured screenshots and screen recordings from a capture source into
object storage through grant-based writes, then confirms them with the
grant broker.
"""

__version__ = "0.1.0"
