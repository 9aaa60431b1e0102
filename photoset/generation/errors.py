"""Error taxonomy for chunk dispatch."""

from __future__ import annotations


class DispatchRejected(Exception):
    """A delivery the dispatcher refuses without mutating state.

    The queue must not redeliver a rejected message.
    """

    status_code = 400
    retryable = False
    code = "rejected"


class AuthenticationError(DispatchRejected):
    """Missing or invalid queue signature."""

    status_code = 401
    code = "invalid_signature"


class MalformedPayloadError(DispatchRejected):
    """The chunk message failed to parse or validate."""

    status_code = 400
    code = "malformed_payload"


class JobNotFoundError(DispatchRejected):
    """The chunk references a job row that does not exist."""

    status_code = 404
    code = "job_not_found"


class JobAlreadyTerminalError(Exception):
    """The job already completed or failed; the delivery is a no-op."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"job {job_id} is already {status}")
        self.job_id = job_id
        self.status = status


class TransientInfrastructureError(RuntimeError):
    """Store or queue failure outside the per-unit loop; safe to redeliver."""

    status_code = 500
    retryable = True
