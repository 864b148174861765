# backend/icm/services/orchestrator.py
"""
ExecutionOrchestrator: one end-to-end run of a scheme for one tenant.

    Initialized -> InputValidated -> Connected -> Evaluated
                -> PostProcessed -> Persisted -> Completed
                                              \\-> Failed (from any state)

Every run ends with an execution log somewhere: the tenant's own log table
when a tenant connection exists and accepts the write, otherwise the
control-plane fallback table. Failed runs keep no agent results; the log
carries the error and the state the run failed in.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol, Sequence

from icm.core.config import settings
from icm.core.errors import (
    ExecutionLogNotFoundError,
    IcmError,
    PersistenceError,
    ProductionRunConflictError,
    RuleConfigurationError,
    RunCancelledError,
    SchemeNotFoundError,
    TenantConfigurationError,
    TenantConnectionError,
    ValidationError,
)
from icm.core.router import ConnectionRouter, TenantConnection
from icm.payout.calculator import PayoutCalculator
from icm.plugins.host import PluginContext, PostProcessorHost
from icm.rules.evaluator import CompiledRuleSet, RuleEvaluator
from icm.schemas.execution import (
    AgentRecord,
    AgentResult,
    CreditShare,
    ExecutionLog,
    ExecutionLogSummary,
    ExecutionSummary,
    ProductionRunDetail,
    RunOutcome,
    RunState,
    utcnow,
)
from icm.schemas.scheme import RunMode, Scheme, SchemeStatus
from icm.services.agent_source import AgentDataSource, SyntheticAgentSource
from icm.services.execution_log_store import ExecutionLogStore
from icm.services.run_ids import RunIdGenerator
from icm.services.scheme_repository import SchemeRepository

logger = logging.getLogger(__name__)


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass
class _Run:
    log: ExecutionLog
    state: RunState = RunState.INITIALIZED
    store: Optional[ExecutionLogStore] = None


@dataclass(frozen=True)
class _PreparedScheme:
    scheme: Scheme
    rules: CompiledRuleSet
    payout_ok: bool
    split_ok: bool


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ExecutionOrchestrator:
    def __init__(
        self,
        router: ConnectionRouter,
        fallback_store: ExecutionLogStore,
        *,
        agent_source: Optional[AgentDataSource] = None,
        evaluator: Optional[RuleEvaluator] = None,
        calculator: Optional[PayoutCalculator] = None,
        post_processors: Optional[PostProcessorHost] = None,
        run_ids: Optional[RunIdGenerator] = None,
        batch_size: int = settings.AGENT_BATCH_SIZE,
        workers: int = settings.AGENT_WORKERS,
        log_write_retries: int = settings.LOG_WRITE_RETRIES,
        log_write_backoff: float = settings.LOG_WRITE_BACKOFF_SECONDS,
    ) -> None:
        self.router = router
        self.fallback_store = fallback_store
        self.agent_source = agent_source or SyntheticAgentSource()
        self.evaluator = evaluator or RuleEvaluator()
        self.calculator = calculator or PayoutCalculator()
        self.post_processors = post_processors or PostProcessorHost()
        self.run_ids = run_ids or fallback_store.run_ids
        self.batch_size = max(1, batch_size)
        self.log_write_retries = max(1, log_write_retries)
        self.log_write_backoff = log_write_backoff

        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="icm-eval")
        self._production_locks: dict[tuple[str, str], _LockEntry] = {}

    async def aclose(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -----------------------------
    # runExecution
    # -----------------------------

    async def run_execution(
        self,
        tenant_id: Optional[str],
        scheme_id: Optional[str],
        mode: Optional[str],
        *,
        records: Optional[Sequence[AgentRecord]] = None,
        cancel_event: Optional[CancelSignal] = None,
    ) -> RunOutcome:
        """
        Run `scheme_id` for `tenant_id` and persist the execution log.

        Returns a RunOutcome in state Completed or Failed; failures are
        reported in the outcome (with the run id of the failure log) rather
        than raised. Only a log that could not be written anywhere raises,
        as PersistenceError.
        """
        run = _Run(
            log=ExecutionLog(
                run_id=self.run_ids.next_id(),
                scheme_id=scheme_id,
                tenant_id=tenant_id,
                mode=mode,
            )
        )
        logger.info("Run %s started (tenant=%s scheme=%s mode=%s)", run.log.run_id, tenant_id, scheme_id, mode)

        try:
            run_mode = self._validate_input(tenant_id, scheme_id, mode)
            run.log.mode = run_mode.value
            self._advance(run, RunState.INPUT_VALIDATED)

            handle = await self.router.acquire(tenant_id)
            run.store = self.tenant_log_store(handle)
            self._advance(run, RunState.CONNECTED)

            schemes = SchemeRepository(handle.engine, handle.tables.schemes)
            if run_mode is RunMode.PRODUCTION:
                async with self._production_lock(tenant_id, scheme_id):
                    await self._execute(run, schemes, run_mode, records, cancel_event)
            else:
                await self._execute(run, schemes, run_mode, records, cancel_event)
        except IcmError as exc:
            return await self._fail(run, exc)
        except Exception as exc:
            logger.exception("Run %s failed unexpectedly", run.log.run_id)
            error = IcmError(f"Unexpected error: {exc}", error_type=type(exc).__name__)
            return await self._fail(run, error)

        return self._outcome(run)

    def _validate_input(self, tenant_id: Any, scheme_id: Any, mode: Any) -> RunMode:
        missing = [
            name
            for name, value in (("tenantId", tenant_id), ("schemeId", scheme_id), ("mode", mode))
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}", fields=missing)
        try:
            return RunMode(mode.strip().lower())
        except ValueError:
            allowed = [m.value for m in RunMode]
            raise ValidationError(f"Mode must be one of {allowed}, got '{mode}'", mode=mode) from None

    async def _execute(
        self,
        run: _Run,
        schemes: SchemeRepository,
        mode: RunMode,
        records: Optional[Sequence[AgentRecord]],
        cancel_event: Optional[CancelSignal],
    ) -> None:
        scheme = await schemes.get_scheme(run.log.scheme_id)
        if mode is RunMode.PRODUCTION:
            if scheme.status == SchemeStatus.PROD_RUN:
                raise ProductionRunConflictError(
                    f"Scheme {scheme.scheme_id} already has a production run",
                    scheme_id=scheme.scheme_id,
                )
            if scheme.status == SchemeStatus.DRAFT:
                raise ValidationError(
                    f"Scheme {scheme.scheme_id} is still a draft and cannot run in production",
                    scheme_id=scheme.scheme_id,
                )

        prepared = self._prepare(scheme, mode, run.log)
        agents = list(records) if records is not None else await self.agent_source.load_agents(run.log.tenant_id, scheme)

        results = await self._evaluate_agents(prepared, agents, cancel_event)
        run.log.agents = results
        run.log.summary = summarize(results)
        self._advance(run, RunState.EVALUATED)

        if scheme.post_processor:
            context = PluginContext(
                scheme_id=scheme.scheme_id,
                mode=mode.value,
                tenant_id=run.log.tenant_id,
                timestamp=utcnow(),
                scheme_snapshot=scheme.to_document(),
            )
            run.log = await self.post_processors.invoke(scheme.post_processor, run.log, context)
        self._advance(run, RunState.POST_PROCESSED)

        on_write = None
        if mode is RunMode.PRODUCTION:
            # status flip commits with the log row or not at all
            on_write = functools.partial(schemes.mark_prod_run, scheme_id=scheme.scheme_id)

        run.log.state = RunState.COMPLETED
        run.log.run_id = await self._append(run.store, run.log, on_write=on_write)
        self._advance(run, RunState.PERSISTED)
        if mode is RunMode.PRODUCTION:
            logger.info("Scheme %s moved to %s by run %s", scheme.scheme_id, SchemeStatus.PROD_RUN.value, run.log.run_id)
        self._advance(run, RunState.COMPLETED)

    def _prepare(self, scheme: Scheme, mode: RunMode, log: ExecutionLog) -> _PreparedScheme:
        """
        Compile rules and check the payout structure once per run.
        Production refuses to start on any configuration issue; simulation
        records the issues in the log's diagnostics and carries on.
        """
        rules = self.evaluator.compile(scheme.rules, scheme.custom_rules)
        structure = scheme.payout_structure
        payout_issues = self.calculator.payout_issues(structure, scheme.quota_amount)
        split_issues = self.calculator.credit_split_issues(structure.credit_split)

        issues = list(rules.issues) + payout_issues + split_issues
        if issues and mode is RunMode.PRODUCTION:
            raise RuleConfigurationError(
                f"Scheme {scheme.scheme_id} has configuration errors",
                issues=issues,
                scheme_id=scheme.scheme_id,
            )
        log.diagnostics.extend(issues)
        log.diagnostics.extend(rules.expression_errors)
        return _PreparedScheme(scheme=scheme, rules=rules, payout_ok=not payout_issues, split_ok=not split_issues)

    # -----------------------------
    # Per-agent evaluation
    # -----------------------------

    async def _evaluate_agents(
        self,
        prepared: _PreparedScheme,
        agents: Sequence[AgentRecord],
        cancel_event: Optional[CancelSignal],
    ) -> list[AgentResult]:
        loop = asyncio.get_running_loop()
        results: list[AgentResult] = []
        for start in range(0, len(agents), self.batch_size):
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(
                    f"Run cancelled after {len(results)} of {len(agents)} agents",
                    processed=len(results),
                )
            batch = agents[start:start + self.batch_size]
            results.extend(
                await asyncio.gather(
                    *(loop.run_in_executor(self._executor, self.evaluate_agent, prepared, record) for record in batch)
                )
            )
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"Run cancelled after {len(results)} of {len(agents)} agents", processed=len(results))
        return results

    def evaluate_agent(self, prepared: _PreparedScheme, record: AgentRecord) -> AgentResult:
        try:
            return self._evaluate_agent(prepared, record)
        except Exception as exc:
            logger.exception("Evaluation failed for agent %s", record.agent_id)
            return AgentResult(
                agent_id=record.agent_id,
                total_base_metric=record.base_metric_value,
                notes=[f"Evaluation error: {exc}"],
            )

    def _evaluate_agent(self, prepared: _PreparedScheme, record: AgentRecord) -> AgentResult:
        scheme = prepared.scheme
        structure = scheme.payout_structure
        evaluation = self.evaluator.evaluate(prepared.rules, record)
        notes: list[str] = []
        commission = Decimal("0")
        shares: list[CreditShare] = []

        if evaluation.excluded:
            notes.append("Excluded: " + ", ".join(e.rule for e in evaluation.exclusions if e.applied))

        if evaluation.qualified:
            if prepared.payout_ok:
                result = self.calculator.compute_commission(
                    evaluation.base_metric,
                    structure,
                    quota_amount=scheme.quota_amount,
                )
                commission = result.amount
                if result.note:
                    notes.append(result.note)
            else:
                notes.append("Payout structure is invalid, commission not computed")

            if structure.credit_split:
                if not prepared.split_ok:
                    notes.append("Credit split is invalid, not applied")
                elif evaluation.credit_applies:
                    shares = self.calculator.split_credit(commission, structure.credit_split)
                else:
                    first = structure.credit_split[0].role
                    shares = [CreditShare(role=first, amount=commission)]
                    notes.append(f"Credit rules not met, full commission credited to {first}")

        return AgentResult(
            agent_id=record.agent_id,
            qualified=evaluation.qualified,
            excluded=evaluation.excluded,
            commission=commission,
            total_base_metric=evaluation.base_metric,
            qualifying_criteria=evaluation.qualifying_criteria,
            exclusions=evaluation.exclusions,
            adjustments=evaluation.adjustments,
            custom_logic=evaluation.custom_logic,
            credit_criteria=evaluation.credit_criteria,
            credit_split=shares,
            notes=notes,
        )

    # -----------------------------
    # Persistence / failure
    # -----------------------------

    def tenant_log_store(self, handle: TenantConnection) -> ExecutionLogStore:
        return ExecutionLogStore(handle.engine, handle.tables.execution_logs, self.run_ids)

    async def _append(self, store: ExecutionLogStore, log: ExecutionLog, *, on_write=None) -> str:
        last_error: Optional[PersistenceError] = None
        for attempt in range(1, self.log_write_retries + 1):
            try:
                return await store.append(log, on_write=on_write)
            except PersistenceError as exc:
                last_error = exc
                logger.warning(
                    "Writing execution log %s failed (attempt %s/%s): %s",
                    log.run_id,
                    attempt,
                    self.log_write_retries,
                    exc.details.get("cause", exc.message),
                )
                if attempt < self.log_write_retries:
                    await asyncio.sleep(self.log_write_backoff * attempt)
        raise last_error

    async def _fail(self, run: _Run, exc: IcmError) -> RunOutcome:
        failed_in = run.state
        logger.error("Run %s failed in state %s: [%s] %s", run.log.run_id, failed_in.value, exc.code, exc.message)

        # all-or-nothing: no partial agent results in a failure log
        run.log = run.log.model_copy(
            update={
                "agents": [],
                "summary": ExecutionSummary(),
                "post_processing_log": None,
                "state": RunState.FAILED,
                "error": {**exc.to_dict(), "state": failed_in.value},
            }
        )
        run.state = RunState.FAILED

        written = False
        if run.store is not None and not isinstance(exc, PersistenceError):
            try:
                run.log.run_id = await self._append(run.store, run.log)
                written = True
            except PersistenceError:
                logger.error("Failure log %s could not be written to the tenant datastore", run.log.run_id)

        if not written:
            try:
                run.log.run_id = await self._append(self.fallback_store, run.log)
            except PersistenceError as write_error:
                logger.critical("Execution log %s could not be written anywhere", run.log.run_id)
                raise PersistenceError(
                    f"Run {run.log.run_id} failed and its execution log could not be written",
                    run_id=run.log.run_id,
                    run_error=exc.to_dict(),
                ) from write_error
            logger.warning("Failure log %s written to the control-plane fallback table", run.log.run_id)

        return self._outcome(run, exc)

    def _advance(self, run: _Run, state: RunState) -> None:
        run.state = state
        logger.info("Run %s -> %s", run.log.run_id, state.value)

    def _outcome(self, run: _Run, exc: Optional[IcmError] = None) -> RunOutcome:
        ppl = run.log.post_processing_log
        return RunOutcome(
            run_id=run.log.run_id,
            state=run.state,
            summary=run.log.summary,
            post_processing_status=ppl.status if ppl else None,
            error=run.log.error,
            exception=exc,
        )

    @contextlib.asynccontextmanager
    async def _production_lock(self, tenant_id: str, scheme_id: str):
        # entry lives only while a production run for the scheme holds or awaits it
        key = (tenant_id, scheme_id)
        entry = self._production_locks.get(key)
        if entry is None:
            entry = self._production_locks[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._production_locks[key]

    # -----------------------------
    # Queries
    # -----------------------------

    async def _tenant_lookup(self, tenant_id: str):
        """(tenant handle or None, error raised while acquiring it or None)."""
        try:
            return await self.router.acquire(tenant_id), None
        except (TenantConfigurationError, TenantConnectionError) as exc:
            logger.info("Tenant %s unavailable for log lookup: %s", tenant_id, exc.message)
            return None, exc

    async def get_execution_log(self, tenant_id: str, run_id: str) -> ExecutionLog:
        handle, tenant_error = await self._tenant_lookup(tenant_id)
        if handle is not None:
            log = await self.tenant_log_store(handle).find_by_run_id(tenant_id, run_id)
            if log is not None:
                return log
        log = await self.fallback_store.find_by_run_id(tenant_id, run_id)
        if log is not None:
            return log
        if tenant_error is not None:
            raise tenant_error
        raise ExecutionLogNotFoundError(f"Execution log {run_id} not found", run_id=run_id)

    async def list_execution_logs(
        self,
        tenant_id: str,
        scheme_id: Optional[str] = None,
        *,
        mode: Optional[str] = None,
    ) -> list[ExecutionLogSummary]:
        handle, tenant_error = await self._tenant_lookup(tenant_id)
        logs: list[ExecutionLog] = []
        if handle is not None:
            logs.extend(await self.tenant_log_store(handle).list_by_scheme(tenant_id, scheme_id, mode=mode))
        logs.extend(await self.fallback_store.list_by_scheme(tenant_id, scheme_id, mode=mode))
        if not logs and tenant_error is not None:
            raise tenant_error

        logs.sort(key=lambda log: log.executed_at, reverse=True)
        return [summarize_log(log) for log in logs]

    async def list_production_runs(self, tenant_id: str) -> list[ExecutionLogSummary]:
        return await self.list_execution_logs(tenant_id, mode=RunMode.PRODUCTION.value)

    async def get_production_run_detail(self, tenant_id: str, run_id: str) -> ProductionRunDetail:
        log = await self.get_execution_log(tenant_id, run_id)
        if log.mode != RunMode.PRODUCTION.value:
            raise ExecutionLogNotFoundError(f"Production run {run_id} not found", run_id=run_id)

        scheme_info = None
        handle, _ = await self._tenant_lookup(tenant_id)
        if handle is not None and log.scheme_id:
            try:
                scheme = await SchemeRepository(handle.engine, handle.tables.schemes).get_scheme(log.scheme_id)
            except (SchemeNotFoundError, RuleConfigurationError):
                scheme = None
            if scheme is not None:
                scheme_info = {
                    "schemeId": scheme.scheme_id,
                    "name": scheme.name,
                    "description": scheme.description,
                    "configName": scheme.config_name,
                    "effectiveStart": scheme.effective_start.isoformat() if scheme.effective_start else None,
                    "effectiveEnd": scheme.effective_end.isoformat() if scheme.effective_end else None,
                    "status": scheme.status.value,
                }
        return ProductionRunDetail(execution_log=log, scheme_info=scheme_info)


def summarize(results: Sequence[AgentResult]) -> ExecutionSummary:
    passed = sum(1 for r in results if r.qualified)
    return ExecutionSummary(
        total_agents=len(results),
        passed=passed,
        failed=len(results) - passed,
        total_commission=sum((r.commission for r in results), Decimal("0")),
    )


def summarize_log(log: ExecutionLog) -> ExecutionLogSummary:
    return ExecutionLogSummary(
        run_id=log.run_id,
        scheme_id=log.scheme_id,
        mode=log.mode,
        state=log.state,
        executed_at=log.executed_at,
        summary=log.summary,
        post_processing_log=log.post_processing_log,
        error=log.error,
    )
