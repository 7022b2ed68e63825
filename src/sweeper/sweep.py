"""Sweep driver: enumerate candidates, select, remediate, delete.

One driver run processes the candidates of one source strictly in name
order, so repeated dry runs produce stable, diffable output. Per-candidate
problems are recorded in the SweepOutcome and never abort the sweep; only
setup problems (such as an empty prefix) raise.

The final delete of a candidate is fire-and-forget. Resource groups can take
many minutes to go away and the sweep should not wait on them one by one.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .azure_clients import is_not_found
from .credentials import log_audit_event
from .identifiers import ResourceIdentifier
from .models import Candidate, SelectionPolicy, SweepOutcome
from .pipeline import CleanerPipeline
from .poller import PollerFactory
from .remediator import RemediationContext

logger = logging.getLogger(__name__)


class EmptyPrefixError(Exception):
    """Raised when a prefix-gated sweep is started with an empty prefix.

    An empty prefix would match every resource in the account.
    """

    pass


class CandidateSource(Protocol):
    """Lists and deletes the candidates of one scope."""

    kind: str
    scope: ResourceIdentifier
    requires_prefix: bool
    supports_purge: bool

    async def list_candidates(self, policy: SelectionPolicy) -> list[Candidate]: ...

    async def delete(self, candidate: Candidate) -> None: ...

    async def purge(self, candidate: Candidate) -> None: ...


def require_prefix(policy: SelectionPolicy) -> None:
    """Refuse to continue when the policy has no prefix.

    Raises:
        EmptyPrefixError: If the prefix is empty or whitespace.
    """
    if not policy.prefix or not policy.prefix.strip():
        raise EmptyPrefixError(
            "Refusing to sweep with an empty prefix: it would match every resource"
        )


def sort_candidates(candidates: Sequence[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda c: (c.name.lower(), c.identifier.normalized))


class SweepDriver:
    """Top-level control loop for one candidate source."""

    def __init__(
        self,
        source: CandidateSource,
        policy: SelectionPolicy,
        pipeline: CleanerPipeline | None = None,
        pollers: PollerFactory | None = None,
    ) -> None:
        self._source = source
        self._policy = policy
        self._pipeline = pipeline
        self._pollers = pollers or PollerFactory()

    async def sweep(self) -> SweepOutcome:
        """Run one sweep over the source.

        Returns:
            The outcome of this sweep. Listing failures are recorded as an
            error against the scope rather than raised.

        Raises:
            EmptyPrefixError: If the source is prefix-gated and the prefix is empty.
        """
        if self._source.requires_prefix:
            require_prefix(self._policy)

        outcome = SweepOutcome()

        logger.info(
            f"Sweeping {self._source.kind}s",
            extra={
                "scope": str(self._source.scope),
                "prefix": self._policy.prefix,
                "dry_run": self._policy.dry_run,
            },
        )

        try:
            candidates = await self._source.list_candidates(self._policy)
        except Exception as e:
            logger.error(
                f"Listing {self._source.kind}s failed",
                extra={"scope": str(self._source.scope), "error": str(e)},
            )
            outcome.record_error(self._source.scope, e)
            return outcome

        candidates = sort_candidates(candidates)[: self._policy.max_candidates]

        for candidate in candidates:
            reason = self._policy.ineligibility_reason(candidate)
            if reason:
                logger.info(
                    f"Skipping {self._source.kind} '{candidate.name}'",
                    extra={"identifier": str(candidate.identifier), "reason": reason},
                )
                outcome.skipped += 1
                continue

            outcome.attempted += 1
            await self._process(candidate, outcome)

        logger.info(
            f"Finished sweeping {self._source.kind}s",
            extra={"scope": str(self._source.scope), **outcome.summary()},
        )
        return outcome

    async def _process(self, candidate: Candidate, outcome: SweepOutcome) -> None:
        dry_run = self._policy.dry_run

        if self._pipeline is not None:
            context = RemediationContext(dry_run=dry_run, pollers=self._pollers, outcome=outcome)
            failures = await self._pipeline.run_all(candidate.identifier, context)
            if failures:
                logger.error(
                    f"Not deleting {self._source.kind} '{candidate.name}': remediation failed",
                    extra={
                        "identifier": str(candidate.identifier),
                        "failures": [
                            {"identifier": str(f.identifier), "step": f.step, "error": str(f.error)}
                            for f in failures
                        ],
                    },
                )
                outcome.record_failures(failures)
                return

        outcome.record_action("delete", candidate.identifier, dry_run)

        if dry_run:
            logger.info(f"Would have deleted {self._source.kind} '{candidate.name}'")
            log_audit_event("delete", str(candidate.identifier), dry_run=True)
            outcome.would_delete += 1
            if self._source.supports_purge:
                outcome.record_action("purge", candidate.identifier, dry_run)
            return

        logger.info(f"Deleting {self._source.kind} '{candidate.name}'..")
        try:
            await self._source.delete(candidate)
        except Exception as e:
            if not is_not_found(e):
                logger.error(
                    f"Deleting {self._source.kind} '{candidate.name}' failed",
                    extra={"identifier": str(candidate.identifier), "error": str(e)},
                )
                log_audit_event(
                    "delete", str(candidate.identifier), dry_run=False, result="failure"
                )
                outcome.record_error(candidate.identifier, e)
                return
            logger.debug(
                "Candidate already gone", extra={"identifier": str(candidate.identifier)}
            )

        log_audit_event("delete", str(candidate.identifier), dry_run=False, result="issued")
        outcome.deleted += 1

        if self._source.supports_purge:
            await self._purge(candidate, outcome)

    async def _purge(self, candidate: Candidate, outcome: SweepOutcome) -> None:
        """Second-phase permanent delete. Best effort: failures are only logged."""
        outcome.record_action("purge", candidate.identifier, False)
        try:
            await self._source.purge(candidate)
        except Exception as e:
            logger.warning(
                f"Permanently deleting {self._source.kind} '{candidate.name}' failed",
                extra={"identifier": str(candidate.identifier), "error": str(e)},
            )
            return
        log_audit_event("purge", str(candidate.identifier), dry_run=False, result="success")


async def run_subscription_cleaners(
    pipeline: CleanerPipeline,
    subscription_id: str,
    policy: SelectionPolicy,
    pollers: PollerFactory | None = None,
) -> SweepOutcome:
    """Run subscription-wide cleaners (soft-deleted purges, NetApp teardown).

    These cleaners select their targets by resource group name, so they are
    gated on the prefix like the resource group sweep.
    """
    require_prefix(policy)

    outcome = SweepOutcome()
    scope = ResourceIdentifier.for_subscription(subscription_id)
    context = RemediationContext(
        dry_run=policy.dry_run, pollers=pollers or PollerFactory(), outcome=outcome
    )

    failures = await pipeline.run_all(scope, context)
    outcome.record_failures(failures)

    logger.info(
        "Finished subscription cleaners",
        extra={"scope": str(scope), **outcome.summary()},
    )
    return outcome
