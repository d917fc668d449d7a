"""
services/case_state_machine.py

Case lifecycle transitions as a pure function.

    apply_transition(CaseState, trigger) -> CaseState

No database, storage or network access happens here. Callers load the case,
ask for the next state, and persist it (``apply_to_case``). Anything not in
the table below raises TransitionRejected.

    Active/Ready/Failed/Timeout  --Submit(initial-parse)-->     Processing[initial_parse]
    Active/Ready/Failed/Timeout  --Submit(parse-statements)-->  Processing
    Review                       --Submit(final-analysis)-->    Processing[final_analysis]
    any but Archived             --JobStarted(task)-->          Processing[stage(task)]
    Processing[initial_parse]/Timeout  --JobSucceeded(initial-parse, ok)-->   Review[review]
    Processing[initial_parse]/Timeout  --JobSucceeded(initial-parse, !ok)-->  Failed
    Processing[stage(task)]/Timeout    --JobSucceeded(other)-->       Ready
    Processing/Timeout           --JobFailed-->                 Failed
    Processing                   --DispatchFailed-->            Failed
    Processing                   --WatchdogExpired-->           Timeout
    any but Archived             --ManualResult-->              Ready
    any but Processing/Archived  --Archive-->                   Archived
    Archived                     --Restore-->                   Active

In Processing a result is only accepted for the task the stage names
(parse-statements runs with no stage). Timeout carries no stage and accepts
late job results: the watchdog only gives up waiting, the backend may still
finish.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from caseflow.db.models import Case, CaseStatus, HitlStage, JobTask
from caseflow.utils.exceptions import TransitionRejected


@dataclass(frozen=True)
class CaseState:
    status: CaseStatus
    hitl_stage: Optional[HitlStage] = None


# ── Triggers ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Trigger:
    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Submit(Trigger):
    task: JobTask


@dataclass(frozen=True)
class JobStarted(Trigger):
    task: JobTask


@dataclass(frozen=True)
class JobSucceeded(Trigger):
    task: JobTask
    extraction_ok: bool = True


@dataclass(frozen=True)
class JobFailed(Trigger):
    pass


@dataclass(frozen=True)
class DispatchFailed(Trigger):
    pass


@dataclass(frozen=True)
class WatchdogExpired(Trigger):
    pass


@dataclass(frozen=True)
class ManualResult(Trigger):
    pass


@dataclass(frozen=True)
class Archive(Trigger):
    pass


@dataclass(frozen=True)
class Restore(Trigger):
    pass


_RESUBMITTABLE = frozenset({CaseStatus.active, CaseStatus.ready, CaseStatus.failed, CaseStatus.timeout})
_AWAITING_RESULT = frozenset({CaseStatus.processing, CaseStatus.timeout})
_ARCHIVABLE = frozenset(
    {CaseStatus.active, CaseStatus.review, CaseStatus.ready, CaseStatus.failed, CaseStatus.timeout}
)


def stage_for_task(task: JobTask) -> Optional[HitlStage]:
    if task is JobTask.initial_parse:
        return HitlStage.initial_parse
    if task is JobTask.final_analysis:
        return HitlStage.final_analysis
    return None


def apply_transition(state: CaseState, trigger: Trigger) -> CaseState:
    status = state.status

    if isinstance(trigger, Submit):
        if status is CaseStatus.processing:
            raise TransitionRejected(status.value, trigger.name, "a job is already in flight")
        if trigger.task is JobTask.final_analysis:
            if status is CaseStatus.review:
                return CaseState(CaseStatus.processing, HitlStage.final_analysis)
            raise TransitionRejected(status.value, trigger.name, "final analysis requires a review set")
        if status in _RESUBMITTABLE:
            return CaseState(CaseStatus.processing, stage_for_task(trigger.task))

    elif isinstance(trigger, JobStarted):
        if status is not CaseStatus.archived:
            return CaseState(CaseStatus.processing, stage_for_task(trigger.task))

    elif isinstance(trigger, JobSucceeded):
        if status is CaseStatus.processing and stage_for_task(trigger.task) != state.hitl_stage:
            raise TransitionRejected(status.value, trigger.name, f"case is not waiting on {trigger.task.value}")
        if status in _AWAITING_RESULT:
            if trigger.task is JobTask.initial_parse:
                if trigger.extraction_ok:
                    return CaseState(CaseStatus.review, HitlStage.review)
                return CaseState(CaseStatus.failed)
            return CaseState(CaseStatus.ready)

    elif isinstance(trigger, JobFailed):
        if status in _AWAITING_RESULT:
            return CaseState(CaseStatus.failed)

    elif isinstance(trigger, DispatchFailed):
        if status is CaseStatus.processing:
            return CaseState(CaseStatus.failed)

    elif isinstance(trigger, WatchdogExpired):
        if status is CaseStatus.processing:
            return CaseState(CaseStatus.timeout)

    elif isinstance(trigger, ManualResult):
        if status is not CaseStatus.archived:
            return CaseState(CaseStatus.ready)

    elif isinstance(trigger, Archive):
        if status in _ARCHIVABLE:
            return CaseState(CaseStatus.archived)

    elif isinstance(trigger, Restore):
        if status is CaseStatus.archived:
            return CaseState(CaseStatus.active)

    raise TransitionRejected(status.value, trigger.name)


def state_of(case: Case) -> CaseState:
    return CaseState(CaseStatus(case.status), HitlStage(case.hitl_stage) if case.hitl_stage else None)


def apply_to_case(case: Case, trigger: Trigger) -> CaseState:
    """Compute the next state for ``case`` and write it onto the row (no commit)."""
    new_state = apply_transition(state_of(case), trigger)
    case.status = new_state.status
    case.hitl_stage = new_state.hitl_stage
    return new_state
