"""Twilio Media Streams <-> OpenAI Realtime audio bridge."""
from .config import BridgeConfig, load_config
from .server import BridgeServer
from .session import Session, SessionState

__all__ = [
    "BridgeConfig",
    "load_config",
    "BridgeServer",
    "Session",
    "SessionState",
]
