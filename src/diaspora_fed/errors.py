"""
Federation error types — one class per failure the engine can report.
"""

from typing import Any, Optional


class FederationError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class MalformedEnvelope(FederationError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("malformed_envelope", message, details)


class CryptoFailure(FederationError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("crypto_failure", message, details)


class SignatureVerificationFailed(FederationError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("signature_verification_failed", message, details)


class KeyResolutionFailure(FederationError):
    def __init__(self, handle: str):
        super().__init__("key_resolution_failure", f"No public key for {handle}", {"handle": handle})
        self.handle = handle


class SpoofedAuthor(FederationError):
    def __init__(self, declared: str, sender: str):
        super().__init__(
            "spoofed_author",
            f"Declared author {declared!r} does not match envelope signer {sender!r}",
            {"declared": declared, "sender": sender},
        )


class UnsupportedMessageType(FederationError):
    def __init__(self, type_name: str):
        super().__init__("unsupported_message_type", f"Unsupported message type: {type_name}", {"type": type_name})


class PrivacyViolation(FederationError):
    def __init__(self, type_name: str):
        super().__init__("privacy_violation", f"Message type {type_name} is only accepted privately", {"type": type_name})


class TransportFailure(FederationError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__("transport_failure", message, {"status_code": status_code})
        self.status_code = status_code


class NoDestination(FederationError):
    def __init__(self, contact_id: Optional[int]):
        super().__init__("no_destination", f"No delivery endpoint for contact {contact_id}", {"contact_id": contact_id})
