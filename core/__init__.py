"""Core module - store-neutral sync models and infrastructure.

This module contains the record models, error taxonomy, configuration, event
bus, observability and cycle state types. It is intentionally transport-agnostic.

Remote-store specifics (the cloud REST API) belong in /connectors/.
"""

__version__ = "1.0.0"
