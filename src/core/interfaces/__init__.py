"""Interfaces/abstracciones del Core.

Por qué:
- Define contratos (Protocol) que implementan adaptadores concretos.
- Permite invertir dependencias: el Core depende de abstracciones, no de boto ni httpx.
"""

from core.interfaces.cloud import CloudAccountProvider
from core.interfaces.source_control import SourceControlProvider
from core.interfaces.state_store import AccountRecord, IdempotencyRecord, IdempotencyStore

__all__ = [
    "AccountRecord",
    "CloudAccountProvider",
    "IdempotencyRecord",
    "IdempotencyStore",
    "SourceControlProvider",
]
