"""
Service layer for trip synchronization.

Provides the document codec, the sync service and its reconciliation
helpers, section lock heartbeats, invite codes and session management.
"""

from services.auth import AuthenticationManager, IdentityError, IdentityProvider, ProviderUser
from services.codec import CodecError, MalformedEnvelope, UnknownVariant
from services.invitations import InvitationService, InviteError
from services.locks import LockHeartbeat
from services.reconcile import ReconciliationGuard, TripSession
from services.sync import SyncService

__all__ = [
    "AuthenticationManager",
    "IdentityError",
    "IdentityProvider",
    "ProviderUser",
    "CodecError",
    "MalformedEnvelope",
    "UnknownVariant",
    "InvitationService",
    "InviteError",
    "LockHeartbeat",
    "ReconciliationGuard",
    "TripSession",
    "SyncService",
]
