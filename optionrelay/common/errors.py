"""
Typed error taxonomy shared by the protocol layer, builder, relay and stores.

Rules:
- Every error carries a stable `code` so callers can branch without string matching.
- Errors are surfaced to the caller verbatim; nothing in this package retries them
  except `SignerUnavailable` (transient signer-side failure).
"""

from __future__ import annotations

from typing import Any, Optional


class OptionRelayError(Exception):
    code: str = "optionrelay_error"

    def __init__(self, message: str = "", *, order_id: Optional[str] = None, **detail: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.order_id = order_id
        self.detail: dict[str, Any] = dict(detail)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.order_id is not None:
            out["order_id"] = self.order_id
        if self.detail:
            out["detail"] = dict(self.detail)
        return out


# --- build-time validation ---


class ValidationError(OptionRelayError, ValueError):
    code = "validation_error"


# --- signatures / signer ---


class SignatureError(OptionRelayError):
    code = "signature_error"


class InvalidSignature(SignatureError):
    code = "invalid_signature"


class SignerMismatch(SignatureError):
    code = "signer_mismatch"


class SigningRejected(OptionRelayError):
    code = "signing_rejected"


class SignerUnavailable(OptionRelayError):
    """
    Transient signer-side failure (remote signer timeout, dropped connection).
    """

    code = "signer_unavailable"


class IdentityMismatch(OptionRelayError):
    code = "identity_mismatch"


# --- idempotency guards ---


class DuplicateOrder(OptionRelayError):
    code = "duplicate_order"


class DuplicateSalt(OptionRelayError):
    code = "duplicate_salt"


# --- lifecycle preconditions ---


class OrderNotFound(OptionRelayError):
    code = "order_not_found"


class OrderUnavailable(OptionRelayError):
    code = "order_unavailable"


class OrderExpired(OptionRelayError):
    code = "order_expired"


class Unauthorized(OptionRelayError):
    code = "unauthorized"


class AlreadyFinalized(OptionRelayError):
    code = "already_finalized"


# --- order store ---


class StoreError(OptionRelayError):
    code = "store_error"


class DuplicateKey(StoreError):
    code = "duplicate_key"


class RecordNotFound(StoreError):
    code = "record_not_found"


class InvalidTransition(StoreError):
    code = "invalid_transition"
