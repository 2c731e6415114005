"""Workflow orchestration: extract -> scrape -> generate with memoized steps."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .compose import compose_prompt, join_context
from .config import ChatforgeConfig, RetryConfig, load_config
from .constants import (
    DEFAULT_LEASE_SECONDS,
    STEP_EXTRACT_URLS,
    STEP_GENERATE_TEXT,
    STEP_SCRAPE_URLS,
)
from .contracts import ScrapeResult
from .errors import (
    ActiveRunExistsError,
    LeaseLostError,
    RunNotFoundError,
    ScrapeError,
    StepError,
    WorkflowAbortedError,
    WorkflowCancelledError,
)
from .extract import extract_urls
from .generation import GenerationInvoker, LanguageModel, get_invoker
from .persistence import (
    MessageStatus,
    RunStatus,
    StepRecord,
    StepStatus,
    WorkflowRepository,
    WorkflowRun,
    get_repository,
)
from .persistence.models import utcnow
from .scrape import ScrapeFanout, Scraper, all_failed, get_fanout
from .utils import retry
from .utils.fingerprint import compute_fingerprint

logger = logging.getLogger(__name__)

StepAction = Callable[[], Awaitable[Dict[str, Any]]]


class WorkflowOrchestrator:
    """Drive a chat message through the generation pipeline.

    Each step's outcome is memoized in the repository keyed by
    ``(run_id, step_name)``. A ``succeeded`` record whose input fingerprint
    still matches is reused instead of re-executed, so resuming a run never
    repeats a completed scrape or model call. Every run that enters
    :meth:`execute` leaves it in a terminal state unless the process dies,
    in which case :meth:`resume_incomplete` picks it up again.

    A run is executed only while this orchestrator holds its lease
    (``owner_id``). The lease is renewed before every step attempt and
    while a step runs, so a second worker skips the run until the lease
    expires.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        fanout: ScrapeFanout,
        invoker: GenerationInvoker,
        retry_policy: Optional[RetryConfig] = None,
        require_context: bool = True,
        owner_id: Optional[str] = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self._repository = repository
        self._fanout = fanout
        self._invoker = invoker
        self.retry_policy = retry_policy or RetryConfig()
        self.require_context = require_context
        self.owner_id = owner_id or str(uuid.uuid4())
        self.lease_seconds = lease_seconds
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    # ------------------------------------------------------------------
    # Entry points
    async def on_message_queued(
        self, message_id: str, text: str, conversation_id: Optional[str] = None
    ) -> WorkflowRun:
        """Generate a reply for ``message_id``.

        A message whose latest run is terminal is left untouched. An active
        run is resumed unless another worker holds a live lease on it, in
        which case it is returned as stored. Otherwise a new run is created.
        """
        run = await self._repository.get_latest_run(message_id)
        if run is not None and run.status.is_terminal:
            logger.info(
                f"Message {message_id} already has {run.status.value} run {run.run_id}; skipping"
            )
            return run

        if run is None:
            try:
                run = await self._repository.create_run(
                    WorkflowRun(
                        message_id=message_id,
                        conversation_id=conversation_id,
                        input_text=text,
                    )
                )
                logger.info(f"Created run {run.run_id} for message {message_id}")
            except ActiveRunExistsError:
                run = await self._repository.get_latest_run(message_id)
                if run is None:
                    raise
                logger.info(f"Joining active run {run.run_id} for message {message_id}")
        else:
            logger.info(f"Resuming run {run.run_id} for message {message_id}")

        return await self.execute(run)

    async def resume(self, run_id: str) -> WorkflowRun:
        """Re-drive a single run from its memoized steps."""
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status.is_terminal:
            return run
        return await self.execute(run)

    async def retry_failed(self, run_id: str) -> WorkflowRun:
        """Start a new run for a failed run's message.

        Failed runs are never reopened. The new run is seeded with every
        ``succeeded`` step of the failed one, so work that already succeeded
        (e.g. a scrape) is reused rather than repeated.
        """
        failed = await self._repository.get_run(run_id)
        if failed is None:
            raise RunNotFoundError(run_id)
        if failed.status is not RunStatus.FAILED:
            raise ValueError(f"Run {run_id} is {failed.status.value}, not failed")

        run = await self._repository.create_run(
            WorkflowRun(
                message_id=failed.message_id,
                conversation_id=failed.conversation_id,
                input_text=failed.input_text,
            )
        )
        for record in await self._repository.list_steps(run_id):
            if record.status is StepStatus.SUCCEEDED:
                await self._repository.put_step(
                    record.model_copy(update={"run_id": run.run_id})
                )
        logger.info(f"Retrying failed run {run_id} as run {run.run_id}")
        return await self.execute(run)

    async def resume_incomplete(self) -> list[WorkflowRun]:
        """Resume every queued or running run whose lease is free or expired."""
        runs = await self._repository.list_incomplete_runs()
        if not runs:
            return []
        logger.info(f"Resuming {len(runs)} incomplete run(s)")
        return list(await asyncio.gather(*(self.execute(run) for run in runs)))

    def cancel(self, run_id: str) -> bool:
        """Request cancellation of ``run_id``.

        Only a run executing in this process can be cancelled. The request
        is honoured before the next step starts and an in-flight step is
        interrupted by cancelling the run's task. Returns ``False`` and
        records nothing when the run is not executing here.
        """
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(run_id)
        task.cancel()
        return True

    # ------------------------------------------------------------------
    # Run lifecycle
    async def execute(self, run: WorkflowRun) -> WorkflowRun:
        """Execute ``run`` to a terminal state.

        A run leased by another live worker is returned unchanged.
        The run gets its own task so that :meth:`cancel` interrupts only this
        run and not the caller.
        """
        if run.status.is_terminal:
            return run

        running = self._tasks.get(run.run_id)
        if running is not None and not running.done():
            # already executing here; wait for it instead of running twice
            return await asyncio.shield(running)

        task = asyncio.ensure_future(self._execute(run))
        self._tasks[run.run_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and run.run_id in self._cancel_requested:
                # cancelled before the run task got to start
                return await self._finish_failed(run, WorkflowCancelledError(None))
            raise
        finally:
            self._tasks.pop(run.run_id, None)
            self._cancel_requested.discard(run.run_id)

    async def _execute(self, run: WorkflowRun) -> WorkflowRun:
        step_name: Optional[str] = None
        try:
            self._check_cancelled(run, step_name)
            run = await self._repository.claim_run(
                run.run_id, self.owner_id, self.lease_seconds
            )
            if run.status.is_terminal:
                return run
            if run.owner_id != self.owner_id:
                logger.info(f"Run {run.run_id} is leased by {run.owner_id}; skipping")
                return run
            await self._repository.set_message_status(
                run.message_id, MessageStatus.PROCESSING
            )
            logger.info(f"Run {run.run_id} running for message {run.message_id}")

            text = run.input_text

            step_name = STEP_EXTRACT_URLS
            extracted = await self._run_step(
                run, step_name, {"text": text}, lambda: self._extract(text)
            )
            urls = list(extracted["urls"])

            step_name = STEP_SCRAPE_URLS
            scraped = await self._run_step(
                run, step_name, {"urls": urls}, lambda: self._scrape(urls)
            )
            results = [ScrapeResult.model_validate(r) for r in scraped["results"]]

            prompt = compose_prompt(text, results)
            step_name = STEP_GENERATE_TEXT
            generated = await self._run_step(
                run,
                step_name,
                {"prompt": prompt, "model": self._invoker.model_id},
                lambda: self._generate(prompt),
            )
            return await self._finish_completed(run, generated["text"])
        except LeaseLostError as e:
            logger.warning(f"{e}; leaving the run to its new owner")
            return await self._repository.get_run(run.run_id) or run
        except WorkflowAbortedError as e:
            return await self._finish_failed(run, e)
        except asyncio.CancelledError:
            failed = await self._finish_failed(run, WorkflowCancelledError(step_name))
            if run.run_id in self._cancel_requested:
                # cancelled through cancel(); the caller itself was not
                return failed
            raise
        except Exception as e:
            logger.exception(f"Run {run.run_id} hit an unexpected error")
            return await self._finish_failed(run, WorkflowAbortedError(step_name, e))

    async def _finish_completed(self, run: WorkflowRun, content: str) -> WorkflowRun:
        run = await self._repository.complete_run(
            run.run_id, RunStatus.COMPLETED, owner_id=self.owner_id
        )
        if run.status is RunStatus.COMPLETED:
            await self._repository.set_message_status(
                run.message_id, MessageStatus.COMPLETED, content=content
            )
        logger.info(f"Run {run.run_id} finished with status {run.status.value}")
        return run

    async def _finish_failed(
        self, run: WorkflowRun, error: WorkflowAbortedError
    ) -> WorkflowRun:
        run = await self._repository.complete_run(
            run.run_id, RunStatus.FAILED, error=str(error), owner_id=self.owner_id
        )
        if run.status is RunStatus.FAILED:
            await self._repository.set_message_status(
                run.message_id, MessageStatus.FAILED, error=run.error
            )
        logger.error(f"Run {run.run_id} failed: {error}")
        return run

    def _check_cancelled(self, run: WorkflowRun, step_name: Optional[str]) -> None:
        if run.run_id in self._cancel_requested:
            raise WorkflowCancelledError(step_name)

    async def _renew_lease(self, run: WorkflowRun) -> None:
        renewed = await self._repository.renew_lease(
            run.run_id, self.owner_id, self.lease_seconds
        )
        if not renewed:
            raise LeaseLostError(run.run_id, self.owner_id)

    async def _keep_lease(self, run: WorkflowRun) -> None:
        """Renew the lease in the background while a long step runs."""
        while True:
            await asyncio.sleep(self.lease_seconds / 3)
            if not await self._repository.renew_lease(
                run.run_id, self.owner_id, self.lease_seconds
            ):
                logger.warning(f"Run {run.run_id}: lease lost while a step was running")
                return

    # ------------------------------------------------------------------
    # Memoized step execution
    async def _run_step(
        self,
        run: WorkflowRun,
        step_name: str,
        step_input: Dict[str, Any],
        action: StepAction,
    ) -> Dict[str, Any]:
        fingerprint = compute_fingerprint(step_name, step_input)
        record = await self._repository.get_step(run.run_id, step_name)
        force = False
        if record is not None and record.status is StepStatus.SUCCEEDED:
            if record.input_fingerprint == fingerprint:
                logger.info(f"Run {run.run_id}: reusing memoized {step_name}")
                return record.output or {}
            logger.warning(
                f"Run {run.run_id}: {step_name} input changed since it succeeded; re-executing"
            )
            force = True

        previous_attempts = record.attempt if record is not None else 0
        tries = 0
        while True:
            self._check_cancelled(run, step_name)
            await self._renew_lease(run)
            tries += 1
            attempt = previous_attempts + tries
            started = await self._repository.put_step(
                StepRecord(
                    run_id=run.run_id,
                    step_name=step_name,
                    input_fingerprint=fingerprint,
                    status=StepStatus.PENDING,
                    attempt=attempt,
                    started_at=utcnow(),
                ),
                force=force,
            )
            force = False
            if (
                started.status is StepStatus.SUCCEEDED
                and started.input_fingerprint == fingerprint
            ):
                # another worker committed this step first
                return started.output or {}

            logger.info(f"Run {run.run_id}: executing {step_name} (attempt {attempt})")
            heartbeat = asyncio.ensure_future(self._keep_lease(run))
            try:
                output = await action()
            except asyncio.CancelledError:
                await self._record_failure(
                    run, step_name, fingerprint, attempt, started.started_at, "cancelled"
                )
                raise
            except StepError as e:
                await self._record_failure(
                    run, step_name, fingerprint, attempt, started.started_at, str(e)
                )
                if e.is_transient and tries < self.retry_policy.max_attempts:
                    logger.warning(
                        f"Run {run.run_id}: {step_name} attempt {attempt} failed "
                        f"transiently, retrying: {e}"
                    )
                    await retry.schedule_retry(tries, self.retry_policy)
                    continue
                raise WorkflowAbortedError(
                    step_name, e, retry_exhausted=e.is_transient
                ) from e
            except Exception as e:
                await self._record_failure(
                    run, step_name, fingerprint, attempt, started.started_at, str(e)
                )
                raise WorkflowAbortedError(step_name, e) from e
            finally:
                heartbeat.cancel()

            stored = await self._repository.put_step(
                StepRecord(
                    run_id=run.run_id,
                    step_name=step_name,
                    input_fingerprint=fingerprint,
                    status=StepStatus.SUCCEEDED,
                    output=output,
                    attempt=attempt,
                    started_at=started.started_at,
                    completed_at=utcnow(),
                )
            )
            return stored.output or {}

    async def _record_failure(
        self,
        run: WorkflowRun,
        step_name: str,
        fingerprint: str,
        attempt: int,
        started_at: Optional[datetime],
        error: str,
    ) -> None:
        await self._repository.put_step(
            StepRecord(
                run_id=run.run_id,
                step_name=step_name,
                input_fingerprint=fingerprint,
                status=StepStatus.FAILED,
                error=error,
                attempt=attempt,
                started_at=started_at,
                completed_at=utcnow(),
            )
        )

    # ------------------------------------------------------------------
    # Step bodies
    async def _extract(self, text: str) -> Dict[str, Any]:
        return {"urls": extract_urls(text)}

    async def _scrape(self, urls: list[str]) -> Dict[str, Any]:
        if not urls:
            return {"results": [], "context": ""}
        results = await self._fanout.scrape_all(urls)
        if all_failed(results) and self.require_context:
            reasons = "; ".join(f"{r.url}: {r.error}" for r in results)
            raise ScrapeError(f"all {len(results)} url(s) failed to scrape ({reasons})")
        return {
            "results": [r.model_dump() for r in results],
            "context": join_context(results),
        }

    async def _generate(self, prompt: str) -> Dict[str, Any]:
        generated = await self._invoker.generate(prompt)
        return generated.model_dump()


def create_orchestrator(
    config: Optional[ChatforgeConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    scraper: Optional[Scraper] = None,
    model_client: Optional[LanguageModel] = None,
) -> WorkflowOrchestrator:
    """Wire an orchestrator from configuration, with optional overrides."""

    config = config or load_config()
    return WorkflowOrchestrator(
        repository or get_repository(),
        get_fanout(scraper, config),
        get_invoker(model_client, config.generation),
        retry_policy=config.retry,
        require_context=config.scraper.require_context,
        lease_seconds=config.worker.lease_seconds,
    )
