"""
Composition root for the Access Engine.

- container: builds one ``Engine`` (store, repositories, policy, every
  component) from a service configuration.
- dependencies: FastAPI dependencies that run the access gate for a route.
"""

from .container import Engine, build_engine

__all__ = ["Engine", "build_engine"]
