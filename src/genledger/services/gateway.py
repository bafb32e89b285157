"""Job submission: provider routing and the charge-then-track orchestration."""

from typing import Any, Mapping, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from genledger.models.generation_job import GenerationJob
from genledger.services.exceptions import (
    GenLedgerError,
    InsufficientBalance,
    InvalidRequest,
    JobNotFound,
    PermanentProviderError,
    ProviderError,
    ReconciliationConflict,
)
from genledger.services.ledger import TokenLedgerService, usage_key
from genledger.services.pricing import DEFAULT_MAX_OUTPUTS, compute_cost, get_model
from genledger.services.providers.base import (
    AsyncResult,
    JobRequest,
    JobStatusReport,
    ProviderClient,
    SubmitResult,
)
from genledger.services.reconciliation import Reconciler

logger = structlog.get_logger()

CHARGE_ON_ACCEPTANCE = "on_acceptance"
CHARGE_ON_COMPLETION = "on_completion"
CHARGE_POLICIES = (CHARGE_ON_ACCEPTANCE, CHARGE_ON_COMPLETION)


class JobSubmissionGateway:
    """Routes requests to the provider that runs the requested model."""

    def __init__(self, providers: Mapping[str, ProviderClient]):
        """Initialize gateway.

        Args:
            providers: Provider clients keyed by provider name (kie, fal)
        """
        self.providers = dict(providers)

    def _client(self, provider: str) -> ProviderClient:
        client = self.providers.get(provider)
        if client is None:
            raise PermanentProviderError(f"Provider {provider} is not configured", provider=provider)
        return client

    async def submit(self, request: JobRequest) -> SubmitResult:
        """Submit a request to its provider.

        Returns:
            SyncResult(images) or AsyncResult(external_task_id)

        Raises:
            InvalidModel: If the model is unknown
            ProviderError: If the provider rejects or fails the request
        """
        spec = get_model(request.model)
        result = await self._client(spec.provider).submit(spec.provider_model, request)
        logger.info(
            "job.provider_accepted",
            model=request.model,
            provider=spec.provider,
            external_task_id=getattr(result, "external_task_id", None),
        )
        return result

    async def poll(self, provider: str, external_task_id: str) -> JobStatusReport:
        return await self._client(provider).get_status(external_task_id)

    def parse_callback(self, provider: str, payload: dict[str, Any]) -> JobStatusReport:
        """Normalize a webhook payload with the provider's record parser."""
        client = self._client(provider)
        parser = getattr(client, "parse_record", None)
        if parser is None:
            raise PermanentProviderError(f"Provider {provider} does not send callbacks", provider=provider)
        return parser(payload)

    async def close(self) -> None:
        for client in self.providers.values():
            await client.close()


class GenerationService:
    """Submits generation jobs: validate, price, persist, submit, charge, track.

    Charge policies:
        on_acceptance: debit when the provider accepts the job, refund on failure
        on_completion: debit when the job completes, nothing to refund on failure
    """

    def __init__(
        self,
        uow_factory,
        ledger: TokenLedgerService,
        gateway: JobSubmissionGateway,
        reconciler: Reconciler,
        tracker=None,
        charge_policy: str = CHARGE_ON_ACCEPTANCE,
        max_outputs: int = DEFAULT_MAX_OUTPUTS,
    ):
        if charge_policy not in CHARGE_POLICIES:
            raise ValueError(f"charge_policy must be one of {CHARGE_POLICIES}, got {charge_policy!r}")
        self.uow_factory = uow_factory
        self.ledger = ledger
        self.gateway = gateway
        self.reconciler = reconciler
        self.tracker = tracker
        self.charge_policy = charge_policy
        self.max_outputs = max_outputs

    def validate(self, request: JobRequest) -> int:
        """Validate a request and return its token cost.

        Raises:
            InvalidModel: If the model is unknown
            InvalidRequest: If parameters are out of range or a required prompt is missing
        """
        spec = get_model(request.model)
        if spec.requires_prompt and not (request.prompt or "").strip():
            raise InvalidRequest(f"Model {request.model} requires a prompt")
        return compute_cost(request.model, request.aspect_ratio, request.output_count, self.max_outputs)

    async def submit_job(self, account_id: str, request: JobRequest) -> GenerationJob:
        """Run one generation request end to end.

        Args:
            account_id: Account paying for the job
            request: Generation parameters

        Returns:
            The job after submission (processing for async providers, completed
            for synchronous ones)

        Raises:
            InvalidModel, InvalidRequest: Before any side effect
            AccountNotFound: If the account does not exist
            InsufficientBalance: Balance below cost (no job, no provider call), or
                lost a concurrent debit after provider acceptance (job failed)
            ProviderError: Provider rejected the job (job failed, nothing charged)
            SQLAlchemyError: The charge could not be written (job failed, nothing charged)
        """
        cost = self.validate(request)
        spec = get_model(request.model)

        account = await self.ledger.get_account(account_id)
        if account.balance < cost:
            raise InsufficientBalance(required=cost, available=account.balance)

        async with await self.uow_factory() as uow:
            job = await uow.jobs.add(
                GenerationJob(
                    account_id=account_id,
                    provider=spec.provider,
                    model=request.model,
                    prompt=request.prompt,
                    settings=request.settings(),
                    tokens_reserved=cost,
                )
            )
        job_id = job.id
        logger.info(
            "job.submitted",
            job_id=str(job_id),
            account_id=account_id,
            model=request.model,
            cost=cost,
        )

        try:
            result = await self.gateway.submit(request)
        except ProviderError as e:
            logger.warning(
                "job.provider_rejected",
                job_id=str(job_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self.reconciler.finalize_failure(job_id, str(e))
            raise

        external_task_id = result.external_task_id if isinstance(result, AsyncResult) else None
        await self._mark_accepted(job_id, account_id, cost, request.model, external_task_id)

        if isinstance(result, AsyncResult):
            if self.tracker is not None:
                self.tracker.schedule(job_id)
        else:
            await self.reconciler.finalize_success(job_id, result.images, result.raw)

        return await self.get_job(job_id)

    async def _mark_accepted(
        self,
        job_id: UUID,
        account_id: str,
        cost: int,
        model: str,
        external_task_id: Optional[str],
    ) -> None:
        if self.charge_policy == CHARGE_ON_COMPLETION:
            async with await self.uow_factory() as uow:
                await uow.jobs.mark_processing(job_id, external_task_id=external_task_id)
            return

        try:
            async with await self.uow_factory() as uow:
                transaction = await self.ledger.apply_debit(
                    uow,
                    account_id,
                    cost,
                    f"{model} generation",
                    reference_id=str(job_id),
                    idempotency_key=usage_key(job_id),
                )
                moved = await uow.jobs.mark_processing(
                    job_id,
                    external_task_id=external_task_id,
                    tokens_charged=cost,
                    charge_transaction_id=transaction.id,
                )
                if not moved:
                    raise ReconciliationConflict(f"Job {job_id} left pending before it was charged")
        except InsufficientBalance as e:
            logger.warning(
                "job.charge_failed",
                job_id=str(job_id),
                account_id=account_id,
                required=e.required,
                available=e.available,
            )
            await self.reconciler.finalize_failure(job_id, "Insufficient balance at charge time")
            raise
        except (GenLedgerError, SQLAlchemyError) as e:
            # A pending job is invisible to the stale sweeper
            logger.error(
                "job.charge_error",
                job_id=str(job_id),
                account_id=account_id,
                external_task_id=external_task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                await self.reconciler.finalize_failure(job_id, f"Charge failed: {e}")
            except SQLAlchemyError as fail_error:
                logger.error("job.charge_error_unresolved", job_id=str(job_id), error=str(fail_error))
            raise

    async def get_job(self, job_id: UUID) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(
        self, account_id: str, limit: int = 20, offset: int = 0
    ) -> tuple[list[GenerationJob], int]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.get_by_account(account_id, limit, offset)
