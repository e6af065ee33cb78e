"""Engine registry — name-based lookup for execution engine adapters.

``config.yaml`` selects an engine by its ``engine`` key; the app builds it
once at startup (and again on /reload).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from gateway.engine.agent_sdk import AgentSDKEngine
from gateway.engine.chat_model import ChatModelEngine

if TYPE_CHECKING:
    from gateway.engine.base import Engine

_registry: dict[str, type] = {
    AgentSDKEngine.name: AgentSDKEngine,
    ChatModelEngine.name: ChatModelEngine,
}


def build_engine(name: str) -> Engine:
    """Instantiate the engine adapter registered under ``name``.

    Raises ``ValueError`` if the name is not registered.
    """
    if name not in _registry:
        raise ValueError(f"Unknown engine '{name}'. Available: {sorted(_registry)}")
    return _registry[name]()
