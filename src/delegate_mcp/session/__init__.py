"""Session host protocol, HTTP client and in-memory double."""

from .fake import FakeSessionService
from .models import AgentInfo, Message, MessageInfo, ModelRef, Part, PartInput, SessionRef, SessionStatus
from .lookup import agent_and_model
from .service import HostSessionService, SessionService, SessionServiceError

__all__ = [
    "agent_and_model",
    "AgentInfo",
    "FakeSessionService",
    "HostSessionService",
    "Message",
    "MessageInfo",
    "ModelRef",
    "Part",
    "PartInput",
    "SessionRef",
    "SessionService",
    "SessionServiceError",
    "SessionStatus",
]
