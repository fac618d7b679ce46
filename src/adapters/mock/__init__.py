"""Adaptadores de registro (mocks).

Por qué un paquete:
- Implementa ambos puertos con identificadores deterministas y sin red, así
  la orquestación se prueba y se ejecuta en dry-run sin credenciales.
- Cada llamada queda en un log de operaciones inspeccionable, no en stdout.
"""

from adapters.mock.cloud import MockCloudAccountProvider
from adapters.mock.operations import Operation, OperationLog
from adapters.mock.source_control import MockSourceControlProvider
from adapters.mock.state_store import InMemoryStateStore

__all__ = [
    "InMemoryStateStore",
    "MockCloudAccountProvider",
    "MockSourceControlProvider",
    "Operation",
    "OperationLog",
]
