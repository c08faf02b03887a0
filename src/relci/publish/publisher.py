# publish/publisher.py
from __future__ import annotations

from typing import List, Sequence

from ..model import FAILED, Artifact, JobResult, PublishOutcome, TriggerEvent
from ..secrets import Secrets
from ..ui.console import Console, get_console
from .base import PublishContext, PublishFailure, PublishTarget


class Publisher:
    """
    Fan a successful job's artifacts out to its destinations.

    Destinations are independent failure domains: an exception in one becomes
    a `failed` outcome for that destination and the rest still publish. There
    is no rollback of destinations that already succeeded.
    """

    def __init__(
        self,
        secrets: Secrets | None,
        event: TriggerEvent,
        *,
        console: Console | None = None,
    ):
        self.secrets = secrets or Secrets()
        self.event = event
        self.console = console or get_console()

    def publish(
        self,
        job_result: JobResult,
        artifacts: Sequence[Artifact],
        targets: Sequence[PublishTarget],
    ) -> List[PublishOutcome]:
        if not job_result.succeeded:
            return []

        ctx = PublishContext(
            job_id=job_result.job_id,
            event=self.event,
            workspace=job_result.workspace,
            artifacts=list(artifacts),
            secrets=self.secrets,
        )

        outcomes: List[PublishOutcome] = []
        for target in targets:
            outcome = self._publish_one(target, ctx)
            self.console.print_publish(job_result.job_id, outcome.target, outcome.status, outcome.detail)
            outcomes.append(outcome)
        return outcomes

    def _publish_one(self, target: PublishTarget, ctx: PublishContext) -> PublishOutcome:
        try:
            return target.publish(ctx)
        except PublishFailure as e:
            return PublishOutcome(target.name, FAILED, detail=self.secrets.redact(e.message))
        except Exception as e:
            # isolated per destination; the message is kept for the report
            return PublishOutcome(target.name, FAILED, detail=self.secrets.redact(f"{type(e).__name__}: {e}"))
