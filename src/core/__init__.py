"""
POS Cloud Sync Core Package

Durable outbox, database access, and observability for shipping POS
business events to the cloud.
"""

from . import database
from . import outbox

__all__ = ["database", "outbox"]
