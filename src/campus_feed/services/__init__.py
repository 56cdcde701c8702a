"""Clients for the hosted project's services and their local counterparts."""

from .auth import AuthClient, AuthSession, Identity, SessionContext, SessionEvent
from .gateway import Gateway, Query, RestGateway
from .realtime import ChangeEvent, ChangeKind, ChangeStreamWorker, RealtimeHub
from .sql_gateway import SqlGateway
from .storage import LocalStorage, RestStorage, UploadOptions

__all__ = [
    "AuthClient", "AuthSession", "Identity", "SessionContext", "SessionEvent",
    "Gateway", "Query", "RestGateway",
    "ChangeEvent", "ChangeKind", "ChangeStreamWorker", "RealtimeHub",
    "SqlGateway",
    "LocalStorage", "RestStorage", "UploadOptions",
]
