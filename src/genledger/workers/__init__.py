"""Background workers for refund retries and stale-job sweeps."""

from genledger.workers.refund_retry_worker import run_refund_retry_worker
from genledger.workers.stale_job_worker import run_stale_job_worker

__all__ = [
    "run_refund_retry_worker",
    "run_stale_job_worker",
]
