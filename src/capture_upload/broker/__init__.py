"""Grant broker clients."""

from capture_upload.broker.base import GrantBroker
from capture_upload.broker.http import HttpGrantBroker
from capture_upload.broker.memory import InMemoryGrantBroker

__all__ = ["GrantBroker", "HttpGrantBroker", "InMemoryGrantBroker"]
