"""
diaspora-fed — Diaspora federation protocol engine.

Magic envelope codec, message normalizer, privacy-aware dispatcher and
relay/delivery engine for nodes of a federated social network.
"""

from diaspora_fed.client import Federation, AsyncFederation
from diaspora_fed.config import FederationConfig
from diaspora_fed.context import ImporterContext
from diaspora_fed.dispatcher import Dispatcher
from diaspora_fed.identity import IdentityResolver, StaticKeyResolver, WebFingerProbe
from diaspora_fed.errors import (
    FederationError,
    MalformedEnvelope,
    CryptoFailure,
    SignatureVerificationFailed,
    KeyResolutionFailure,
    SpoofedAuthor,
    UnsupportedMessageType,
    PrivacyViolation,
    TransportFailure,
    NoDestination,
)
from diaspora_fed.models.message import MessageType, NormalizedMessage, InboundResult
from diaspora_fed.models.delivery import DeliveryOutcome, DeliveryResult

__version__ = "0.1.0"
__all__ = [
    "Federation",
    "AsyncFederation",
    "FederationConfig",
    "ImporterContext",
    "Dispatcher",
    "IdentityResolver",
    "StaticKeyResolver",
    "WebFingerProbe",
    "FederationError",
    "MalformedEnvelope",
    "CryptoFailure",
    "SignatureVerificationFailed",
    "KeyResolutionFailure",
    "SpoofedAuthor",
    "UnsupportedMessageType",
    "PrivacyViolation",
    "TransportFailure",
    "NoDestination",
    "MessageType",
    "NormalizedMessage",
    "InboundResult",
    "DeliveryOutcome",
    "DeliveryResult",
]
