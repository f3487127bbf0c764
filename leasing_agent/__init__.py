from .reconciler import ConversationBook, ConversationEntry, Fragment, TranscriptReconciler
from .server import build_default_app, create_app

__all__ = [
    "ConversationBook",
    "ConversationEntry",
    "Fragment",
    "TranscriptReconciler",
    "build_default_app",
    "create_app",
]
