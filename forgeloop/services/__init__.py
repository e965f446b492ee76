from .models import FailoverModelAPI, ModelAPI, ModelClientContext, ModelRegistry, default_registry
from .openai_client import OpenAICompatibleChatAPI
from .reducer import ContextReducer, LineSampler, LogOutputReducer

__all__ = [
    "ContextReducer",
    "FailoverModelAPI",
    "LineSampler",
    "LogOutputReducer",
    "ModelAPI",
    "ModelClientContext",
    "ModelRegistry",
    "OpenAICompatibleChatAPI",
    "default_registry",
]
