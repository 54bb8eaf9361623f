class PaymentError(Exception):
    """Base class for reconciliation errors raised by the payments app."""


class UnresolvedSession(PaymentError):
    """No Order could be found for the session id (or the notification's tran_id)."""


class ValidationFailed(PaymentError):
    """The gateway rejected the notification or could not be reached.

    The Order is left untouched; the gateway's own redelivery retries it.
    """


class LockContention(PaymentError):
    """Another worker holds the idempotency lock for this transaction."""

    def __init__(self, key: str):
        super().__init__(f"lock held: {key}")
        self.key = key


class ConflictingFinalization(PaymentError):
    """A validated outcome disagrees with the outcome already recorded on the Order."""

    def __init__(self, tran_id: str, recorded: str, reported: str):
        super().__init__(f"{tran_id}: recorded {recorded}, gateway now reports {reported}")
        self.tran_id = tran_id
        self.recorded = recorded
        self.reported = reported


class ProvisioningFailed(PaymentError):
    """The provisioning API call failed; the order waits in SYNC_PENDING for a retry."""
