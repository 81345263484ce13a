"""
TOLLGATE - Metered Text-Generation Gateway

Bills usage of interchangeable text-generation providers against a per-user
credit ledger, and offloads heavier generation work to a job queue.
"""

__version__ = "0.1.0"

from .config import GatewayConfig
from .errors import GatewayError
from .gateway import MeteredGateway

__all__ = ["__version__", "GatewayConfig", "GatewayError", "MeteredGateway"]
