from foreman.workers.base import VERDICTS, Verdict, Worker, WorkerRequest, WorkerResponse
from foreman.workers.implementer import ImplementerWorker
from foreman.workers.reviewer import ReviewerWorker
from foreman.workers.scribe import ScribeWorker
from foreman.workers.strategist import StrategistWorker
from foreman.workers.verifier import VerifierWorker

__all__ = [
    "ImplementerWorker",
    "ReviewerWorker",
    "ScribeWorker",
    "StrategistWorker",
    "VERDICTS",
    "Verdict",
    "VerifierWorker",
    "Worker",
    "WorkerRequest",
    "WorkerResponse",
]
