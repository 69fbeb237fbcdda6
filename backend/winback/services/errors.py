"""
Recovery Pipeline Exceptions
============================

Custom exception types for the recovery pipeline.

Failure modes differ in how the caller must react:
- A lost claim or a subscriber that no longer qualifies is an expected
  outcome and is returned as a value (None), not raised.
- An incentive-code failure happens before anything was sent, so the caller
  releases the dispatch lock and the subscriber is retried next cycle.
- A transport failure is reported as a failed TransportResult; the lock is
  kept so the message is never sent twice.
- An invalid lifecycle transition is a programming error.

Store errors (sqlalchemy.exc.SQLAlchemyError) are never wrapped and abort
the cycle.

RELATED FILES
-------------
- winback/services/code_issuer.py: Raises IssuanceError
- winback/services/telnyx_client.py: Raises TransportError internally
- winback/services/lifecycle.py: Raises InvalidTransitionError
- winback/services/recovery_pipeline.py: Catches and records outcomes
"""

from typing import Optional


class WinbackError(Exception):
    """
    Base exception for all recovery pipeline errors.

    USAGE:
        try:
            await issuer.issue_code(subscriber_id, CodeNamespaceEnum.recovery)
        except WinbackError as e:
            logger.warning(f"[RECOVERY] {e}")
    """

    def __init__(self, message: str, subscriber_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subscriber_id = subscriber_id


class IssuanceError(WinbackError):
    """
    Incentive code could not be generated, reserved or registered.

    Recoverable: nothing was sent yet, so the caller unlocks the subscriber.
    """

    def __init__(self, message: str, subscriber_id: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, subscriber_id=subscriber_id)
        self.code = code


class TransportError(WinbackError):
    """SMS provider rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class DiscountIssuerError(WinbackError):
    """Store discount API rejected the request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class InvalidTransitionError(WinbackError):
    """Requested recovery_state transition is not in the lifecycle table."""

    def __init__(self, from_state, to_state):
        super().__init__(f"Invalid recovery transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class InvalidPhoneError(WinbackError):
    """Phone number cannot be normalised to E.164."""

    def __init__(self, phone: str):
        super().__init__(f"Invalid phone number: {phone!r}")
        self.phone = phone
