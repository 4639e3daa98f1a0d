from __future__ import annotations

from typing import Final


class RpsError(Exception):
    """Base class for every typed failure an action can end with."""

    category: str = "error"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RpsError):
    # Raised before any network interaction.
    category = "validation"


class SignerRejection(RpsError):
    category = "signer_rejection"
    retryable = True


class StaleAuthorization(RpsError):
    """Permit nonce or deadline no longer valid; rebuild it with fresh values."""

    category = "stale_authorization"
    retryable = True


class ProtocolViolation(RpsError):
    category = "protocol_violation"

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class TransportFailure(RpsError):
    category = "transport_failure"
    retryable = True


class LedgerRevert(Exception):
    """A ledger refused a call or transaction. Raw, not yet classified."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# Substrings of revert reasons that mean the permit itself went stale.
STALE_REVERT_MARKERS: Final[tuple[str, ...]] = (
    "nonce",
    "expired",
    "deadline",
    "invalid signature",
    "invalid-signature",
)


def classify_revert(exc: LedgerRevert) -> RpsError:
    reason = exc.reason.strip()
    lowered = reason.lower()
    if any(marker in lowered for marker in STALE_REVERT_MARKERS):
        return StaleAuthorization(f"permit rejected by ledger: {reason}")
    code = lowered.replace(" ", "_") or "reverted"
    return ProtocolViolation(code, f"ledger rejected the transition: {reason or 'reverted'}")
