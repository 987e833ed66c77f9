"""
Agent Service - Session/Status Facade

Wires connectivity and polling together, keeps the displayable state and
serves it on a local HTTP endpoint.
"""

from .service import AgentService

__all__ = ["AgentService"]
