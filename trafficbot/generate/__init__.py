# Generator package: model clients, message types and the answer streamer.

from .clients.echo_dev_client import EchoDevClient
from .streamer import CompletionStream, CompletionStreamer
from .types import Message, ModelParams

__all__ = ["CompletionStream", "CompletionStreamer", "Message", "ModelParams", "EchoDevClient"]
