from __future__ import annotations

import asyncio
import logging

from foreman.observer import CancellationToken
from foreman.workers.base import Worker, WorkerRequest, WorkerResponse

logger = logging.getLogger(__name__)


class ImplementerWorker(Worker):
    phase = "implementation"
    role = "implementer"
    prompt_file = "implementer.md"
    fallback_prompt = """
You are the Implementer.
Carry out the agreed strategy, touching only the files it lists unless unavoidable.
Report every file you touched.
""".strip()
    required_keys = {"touched_files": list, "summary": str}
    path_keys = ("touched_files",)

    async def run(
        self,
        request: WorkerRequest,
        token: CancellationToken | None = None,
    ) -> WorkerResponse:
        if token is None:
            return await super().run(request)

        invocation = asyncio.create_task(self.invoke(request))
        stopper = asyncio.create_task(token.wait())
        try:
            await asyncio.wait({invocation, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()

        if invocation.done():
            return self.parse(invocation.result(), request)

        invocation.cancel()
        try:
            await invocation
        except asyncio.CancelledError:
            pass
        logger.info("Implementation of %s stopped early: %s", request.step.step_id, token.reason)
        return WorkerResponse(
            phase=self.phase,
            verdict="partial",
            payload={
                "touched_files": [],
                "summary": f"Stopped early: {token.reason}",
                "cancel_reason": token.reason,
            },
        )
