"""
Promotion coordinator: acceptance -> QA -> QA sign-off -> production.

Each operation restores the candidate's state from the registry tag set,
walks the stage graph through pure transitions, performs the stage's
side effects and mints the stage's tag. The coordinator is the only
writer of version tags. Engine errors raised inside a stage end the stage
in the failed state; nothing is retried automatically.
"""

import asyncio
from typing import List, Optional, Protocol, Tuple

from core.config import Settings, get_settings
from core.exceptions import (
    InvalidTransitionError,
    InvalidVersionTag,
    PromotionEngineError,
    SignoffDenied,
)
from core.logging import get_logger
from deployment.health_checker import HealthCheckConfig, HealthPoller, HealthPollResult
from deployment.models import DeploymentOutcome, DeploymentRequest, Environment, RegistryCredential
from promotion.locks import EnvironmentLocks
from promotion.states import (
    PromotionChain,
    PromotionEvent,
    PromotionStageResult,
    PromotionState,
    restore_state,
    snapshot,
    transition,
)
from promotion.versioning import VersionTag, next_candidate, next_release_base

logger = get_logger(__name__, domain="promotion")

E = PromotionEvent
S = PromotionState


class TagStore(Protocol):
    def reference(self, tag: Optional[str] = None, digest: Optional[str] = None) -> str: ...

    async def list_tags(self) -> List[str]: ...

    async def digest(self, tag: str) -> Optional[str]: ...

    async def add_tag(self, source: str, target: str) -> str: ...


class Deployer(Protocol):
    async def deploy(self, request: DeploymentRequest) -> DeploymentOutcome: ...


class _Stage:
    """Tracks state and transitions while one stage runs."""

    def __init__(self, name: str, state: PromotionState, source_tag: Optional[str] = None):
        self.name = name
        self.state = state
        self.source_tag = source_tag
        self.transitions: List[Tuple[PromotionState, PromotionEvent, PromotionState]] = []

    def apply(self, event: PromotionEvent) -> PromotionState:
        new_state = transition(self.state, event)
        self.transitions.append((self.state, event, new_state))
        logger.info(f"{self.name}: {self.state.value} --{event.value}--> {new_state.value}")
        self.state = new_state
        return new_state

    def result(self, **fields) -> PromotionStageResult:
        return PromotionStageResult(
            stage=self.name,
            state=self.state,
            source_tag=self.source_tag,
            transitions=list(self.transitions),
            **fields,
        )


class PromotionCoordinator:
    """Runs promotion stages against the registry tag set and the target hosts."""

    def __init__(
        self,
        tag_store: TagStore,
        deployer: Deployer,
        acceptance_suite,
        discovery,
        locks: Optional[EnvironmentLocks] = None,
        settings: Optional[Settings] = None,
        version_check: Optional[HealthPoller] = None,
    ):
        self.tag_store = tag_store
        self.deployer = deployer
        self.acceptance_suite = acceptance_suite
        self.discovery = discovery
        self.locks = locks or EnvironmentLocks()
        self.settings = settings or get_settings()
        self.version_check = version_check or HealthPoller(
            HealthCheckConfig(max_attempts=1, timeout_seconds=self.settings.health_request_timeout)
        )
        self.chain = PromotionChain()

    # Stage operations

    async def run_acceptance(self, force: bool = False) -> PromotionStageResult:
        """Deploy the newest latest artifact to acceptance, test it and mint -rc.N."""
        stage = _Stage("acceptance", S.NOT_STARTED)
        try:
            async with self.locks.hold(Environment.ACCEPTANCE.value):
                # The next -rc.N is read and minted under the same lock
                tags = await self.tag_store.list_tags()
                discovery = await self.discovery.discover(self.tag_store, tags)
                if discovery.digest is None or not (force or discovery.has_new_artifact):
                    logger.info(f"Acceptance skipped: {discovery.reason}")
                    return self._record(stage.result(skipped=True, message=discovery.reason))

                base = next_release_base(tags, self.settings.release_version)
                candidate = next_candidate(tags, base)
                stage.apply(E.ACCEPTANCE_TRIGGERED)

                # Deploy by digest so the candidate tag names exactly what was tested
                reference = self.tag_store.reference(digest=discovery.digest)
                outcome = await self.deployer.deploy(self._request(Environment.ACCEPTANCE, reference, str(candidate)))
                if not outcome.success:
                    stage.apply(E.ACCEPTANCE_FAILED)
                    return self._record(self._deployment_failure(stage, outcome))

                suite = await self.acceptance_suite.run(self._base_url(Environment.ACCEPTANCE))
                if not suite.passed:
                    stage.apply(E.ACCEPTANCE_FAILED)
                    return self._record(
                        stage.result(
                            message="Acceptance suite failed",
                            error_code="ACCEPTANCE_TESTS_FAILED",
                            diagnostics="\n".join(suite.failures + ([suite.output] if suite.output else [])),
                            deployment=outcome,
                        )
                    )

                await self.tag_store.add_tag(discovery.digest, str(candidate))
            stage.apply(E.ACCEPTANCE_SUCCEEDED)
            return self._record(
                stage.result(produced_tag=str(candidate), message=f"Minted {candidate}", deployment=outcome)
            )
        except PromotionEngineError as e:
            return self._record(self._stage_failure(stage, e, E.ACCEPTANCE_FAILED))

    async def run_qa(self, version: str) -> PromotionStageResult:
        """Deploy the exact -rc.N candidate to QA."""
        stage = _Stage("qa", S.NOT_STARTED, source_tag=version)
        try:
            candidate = self._parse_candidate(version)
            stage.source_tag = str(candidate)
            stage.state = restore_state(await self.tag_store.list_tags(), candidate)
            stage.apply(E.QA_TRIGGERED)

            async with self.locks.hold(Environment.QA.value):
                outcome = await self.deployer.deploy(
                    self._request(Environment.QA, self.tag_store.reference(tag=str(candidate)), str(candidate))
                )
            if not outcome.success:
                stage.apply(E.QA_FAILED)
                return self._record(self._deployment_failure(stage, outcome))

            stage.apply(E.QA_SUCCEEDED)
            return self._record(stage.result(message=f"{candidate} is running in QA", deployment=outcome))
        except PromotionEngineError as e:
            return self._record(self._stage_failure(stage, e, E.QA_FAILED))

    async def submit_signoff(self, version: str, passed: bool) -> PromotionStageResult:
        """Record the QA decision for a candidate as a -qa-success|failure tag."""
        stage = _Stage("qa-signoff", S.NOT_STARTED, source_tag=version)
        try:
            candidate = self._parse_candidate(version)
            stage.source_tag = str(candidate)
            # QA is not redeployed while its sign-off is recorded
            async with self.locks.hold(Environment.QA.value):
                stage.state = restore_state(await self.tag_store.list_tags(), candidate)
                if stage.state != S.ACCEPTANCE_PASSED:
                    raise InvalidTransitionError(
                        stage.state.value,
                        E.SIGNOFF_REQUESTED.value,
                        f"{candidate} cannot be signed off in state {stage.state.value}",
                    )
                await self._confirm_qa(candidate)
                stage.state = S.QA_PASSED
                stage.apply(E.SIGNOFF_REQUESTED)

                decision = candidate.with_signoff(passed)
                await self.tag_store.add_tag(str(candidate), str(decision))
                stage.apply(E.SIGNOFF_APPROVED if passed else E.SIGNOFF_REJECTED)
            return self._record(
                stage.result(produced_tag=str(decision), message=f"QA sign-off recorded as {decision}")
            )
        except PromotionEngineError as e:
            return self._record(self._stage_failure(stage, e, None))

    async def run_production(self, version: str) -> PromotionStageResult:
        """Mint vX.Y.Z from a signed-off candidate and deploy it to production."""
        stage = _Stage("production", S.NOT_STARTED, source_tag=version)
        try:
            candidate = self._parse_candidate(version, allow_signoff=True)
            stage.source_tag = str(candidate)
            release = candidate.to_release()
            async with self.locks.hold(Environment.PRODUCTION.value):
                tags = await self.tag_store.list_tags()
                snap = snapshot(tags, candidate)
                stage.state = restore_state(tags, candidate)
                if stage.state == S.SIGNOFF_DENIED:
                    raise SignoffDenied(str(candidate))
                if stage.state != S.SIGNOFF_GRANTED:
                    raise InvalidTransitionError(
                        stage.state.value, E.PRODUCTION_TRIGGERED.value, f"{candidate} has no granted QA sign-off"
                    )
                if snap.released and await self._serving(Environment.PRODUCTION, release):
                    logger.info(f"{release} is already serving in production")
                    stage.state = S.RELEASED
                    return self._record(
                        stage.result(skipped=True, produced_tag=str(release), message=f"{release} is already released")
                    )
                stage.apply(E.PRODUCTION_TRIGGERED)

                await self._mint_release(candidate, release, already_tagged=snap.released)
                outcome = await self.deployer.deploy(
                    self._request(Environment.PRODUCTION, self.tag_store.reference(tag=str(release)), str(release))
                )
            if not outcome.success:
                stage.apply(E.PRODUCTION_FAILED)
                return self._record(self._deployment_failure(stage, outcome, produced_tag=str(release)))

            stage.apply(E.PRODUCTION_SUCCEEDED)
            return self._record(
                stage.result(produced_tag=str(release), message=f"Released {release}", deployment=outcome)
            )
        except PromotionEngineError as e:
            return self._record(self._stage_failure(stage, e, E.PRODUCTION_FAILED))

    async def watch_acceptance(
        self, interval: Optional[float] = None, iterations: Optional[int] = None, sleep=asyncio.sleep
    ) -> List[PromotionStageResult]:
        """Run acceptance on a fixed schedule; runs with nothing new are no-ops."""
        interval = interval if interval is not None else self.settings.acceptance_interval_seconds
        results = []
        run = 0
        while iterations is None or run < iterations:
            if run:
                await sleep(interval)
            run += 1
            logger.info(f"Scheduled acceptance run #{run}")
            results.append(await self.run_acceptance())
        return results

    # Helpers

    async def _mint_release(self, candidate: VersionTag, release: VersionTag, already_tagged: bool) -> None:
        candidate_digest = await self.tag_store.digest(str(candidate))
        if already_tagged:
            # A failed production run left the tag; redeploy it only if it is the same artifact
            release_digest = await self.tag_store.digest(str(release))
            if release_digest != candidate_digest:
                raise InvalidTransitionError(
                    S.SIGNOFF_GRANTED.value,
                    E.PRODUCTION_TRIGGERED.value,
                    f"{release} already exists and points at a different artifact",
                )
            logger.info(f"{release} already minted from {candidate}; redeploying")
            return
        await self.tag_store.add_tag(candidate_digest or str(candidate), str(release))

    async def _reported_by(self, environment: Environment) -> HealthPollResult:
        url = self.settings.health_url(self.settings.host_for(environment.value).address)
        return await self.version_check.poll(url)

    async def _serving(self, environment: Environment, version: VersionTag) -> bool:
        check = await self._reported_by(environment)
        return check.healthy and check.reported_version == str(version)

    async def _confirm_qa(self, candidate: VersionTag) -> None:
        if not self.settings.signoff_requires_qa_check:
            return
        check = await self._reported_by(Environment.QA)
        if not check.healthy or check.reported_version != str(candidate):
            raise InvalidTransitionError(
                S.ACCEPTANCE_PASSED.value,
                E.SIGNOFF_REQUESTED.value,
                f"QA is not serving {candidate} (reports {check.reported_version or check.last_error})",
            )

    def _parse_candidate(self, version: str, allow_signoff: bool = False) -> VersionTag:
        tag = VersionTag.parse(version)
        if tag.rc is None or (tag.signoff and not allow_signoff):
            raise InvalidVersionTag(f"Expected a vX.Y.Z-rc.N tag, got {version}", tag=version)
        if tag.signoff == "failure":
            raise SignoffDenied(str(tag.candidate()))
        return tag.candidate()

    def _request(self, environment: Environment, reference: str, version_label: str) -> DeploymentRequest:
        return DeploymentRequest(
            environment=environment,
            artifact_reference=reference,
            version_label=version_label,
            host=self.settings.host_for(environment.value),
            registry=RegistryCredential(
                registry=self.settings.registry_host,
                principal=self.settings.registry_user,
                token=self.settings.registry_token_value(),
            ),
        )

    def _base_url(self, environment: Environment) -> str:
        address = self.settings.host_for(environment.value).address
        return f"{self.settings.health_scheme}://{address}:{self.settings.workload_port}"

    def _deployment_failure(
        self, stage: _Stage, outcome: DeploymentOutcome, produced_tag: Optional[str] = None
    ) -> PromotionStageResult:
        return stage.result(
            produced_tag=produced_tag,
            message=f"Deployment failed at {outcome.failure_stage.value if outcome.failure_stage else 'unknown'}",
            error_code=outcome.error_code,
            diagnostics=outcome.diagnostics,
            deployment=outcome,
        )

    def _stage_failure(
        self, stage: _Stage, error: PromotionEngineError, event: Optional[PromotionEvent]
    ) -> PromotionStageResult:
        logger.error(f"{stage.name} failed: {error.message}")
        if event is not None and (stage.state, event) in _FAILURE_EDGES:
            stage.apply(event)
        else:
            # No failure edge from here: the result is failed, the transition record stays as walked
            stage.state = S.FAILED
        return stage.result(message=error.message, error_code=error.error_code, diagnostics=error.diagnostics)

    def _record(self, result: PromotionStageResult) -> PromotionStageResult:
        self.chain.append(result)
        return result


_FAILURE_EDGES = {
    (S.ACCEPTANCE_RUNNING, E.ACCEPTANCE_FAILED),
    (S.QA_RUNNING, E.QA_FAILED),
    (S.PRODUCTION_RUNNING, E.PRODUCTION_FAILED),
}


def build_coordinator(settings: Optional[Settings] = None) -> PromotionCoordinator:
    """Wire a coordinator from settings: registry tag store, SSH deployer, suite, discovery, locks."""
    from deployment.ssh_deployer import SSHDeployer
    from promotion.acceptance import build_acceptance_suite, build_discovery
    from promotion.locks import build_locks
    from promotion.tag_store import RegistryTagStore

    settings = settings or get_settings()
    tag_store = RegistryTagStore(
        settings.registry_host,
        settings.repository_path,
        principal=settings.registry_user,
        token=settings.registry_token.get_secret_value() if settings.registry_token else "",
        timeout=settings.registry_timeout,
    )
    return PromotionCoordinator(
        tag_store=tag_store,
        deployer=SSHDeployer(settings),
        acceptance_suite=build_acceptance_suite(settings),
        discovery=build_discovery(settings.discovery_strategy),
        locks=build_locks(settings.lock_redis_url, ttl=settings.lock_ttl_seconds, lock_dir=settings.lock_dir),
        settings=settings,
    )
