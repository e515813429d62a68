"""
Ops Gateway - Operational HTTP Surface

The Ops Gateway wires the Touchline Core components together and exposes them
to operators:
- Service container building and starting every component once
- Performance summary, snapshot and history endpoints
- Cache health, metrics, warming and clear endpoints
- Alert listing, acknowledgment and resolution endpoints
"""

from .app import create_app, run_server
from .container import ServiceContainer

__all__ = [
    'create_app',
    'run_server',
    'ServiceContainer',
]
