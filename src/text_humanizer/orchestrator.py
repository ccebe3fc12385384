import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from text_humanizer.config import settings
from text_humanizer.humanizer_client import HumanizerClient
from text_humanizer.ledger import CreditLedger, CreditReservation
from text_humanizer.polling import RetryPolicy, Sleep, poll_until_done
from text_humanizer.schemas import HumanizationSettings

logger = logging.getLogger(__name__)

HUMANIZE_DESCRIPTION = "Text humanization"
REHUMANIZE_DESCRIPTION = "Text rehumanization"
REFUND_DESCRIPTION = "Refund for failed humanization"
DISCARDED_DESCRIPTION = "Refund for discarded humanization"


class JobStatus(str, Enum):
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    SUCCEEDED = "Succeeded"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.SUCCEEDED, JobStatus.TIMED_OUT, JobStatus.FAILED}


class JobError(RuntimeError):
    pass


class InvalidInputLength(JobError):
    def __init__(self, length: int, min_chars: int, max_chars: int) -> None:
        super().__init__(f"Text must be between {min_chars} and {max_chars} characters, got {length}")
        self.length = length


class ProcessingTimedOut(JobError):
    def __init__(self, job: "Job") -> None:
        super().__init__(f"Document processing timed out after {job.attempts} attempts")
        self.job = job


class NoPriorJob(JobError):
    pass


@dataclass
class Job:
    input_text: str
    settings: HumanizationSettings
    user_id: str | None = None
    external_id: str | None = None
    prior_external_id: str | None = None
    output_text: str | None = None
    status: JobStatus | None = None
    attempts: int = 0
    credits_charged: int = 0
    reservation: CreditReservation | None = None

    def transition(self, status: JobStatus) -> None:
        if self.status is not None and self.status.terminal:
            raise RuntimeError(f"job {self.external_id} is already {self.status.value}")
        logger.info(
            "Job %s: %s -> %s",
            self.external_id or "<unsubmitted>",
            self.status.value if self.status else "new",
            status.value,
        )
        self.status = status


class JobOrchestrator:
    """Reserve credits, submit, poll; keep the credits on output, release them otherwise."""

    def __init__(
        self,
        client: HumanizerClient,
        ledger: CreditLedger,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        charge_rehumanize: bool | None = None,
    ) -> None:
        self.client = client
        self.ledger = ledger
        self.policy = policy or RetryPolicy.from_settings()
        self.sleep = sleep
        self.charge_rehumanize = (
            settings.rehumanize_charges_credits if charge_rehumanize is None else charge_rehumanize
        )

    def validate_text(self, text: str) -> None:
        if not settings.min_input_chars <= len(text) <= settings.max_input_chars:
            raise InvalidInputLength(len(text), settings.min_input_chars, settings.max_input_chars)

    async def humanize(self, text: str, job_settings: HumanizationSettings | None, user_id: str) -> Job:
        self.validate_text(text)
        job = Job(input_text=text, settings=job_settings or HumanizationSettings(), user_id=user_id)

        reservation = await asyncio.to_thread(self.ledger.reserve, user_id, len(text), HUMANIZE_DESCRIPTION)
        job.reservation = reservation
        job.credits_charged = reservation.amount

        try:
            job.external_id = await self.client.submit(text, job.settings)
        except BaseException as exc:
            logger.warning("Submission failed for user %s: %s", user_id, exc)
            job.transition(JobStatus.FAILED)
            await self._release(job, reservation)
            raise

        job.transition(JobStatus.SUBMITTED)
        return await self._follow(job, reservation)

    async def rehumanize(
        self,
        prior_external_id: str | None,
        *,
        user_id: str | None = None,
        original_text: str | None = None,
        job_settings: HumanizationSettings | None = None,
    ) -> Job:
        if not prior_external_id:
            raise NoPriorJob("Cannot rehumanize. No original document ID found.")

        job = Job(
            input_text=original_text or "",
            settings=job_settings or HumanizationSettings(),
            user_id=user_id,
            prior_external_id=prior_external_id,
        )

        reservation = None
        if self.charge_rehumanize:
            if not user_id or not original_text:
                raise ValueError("user_id and original_text are required when rehumanizing is charged")
            reservation = await asyncio.to_thread(
                self.ledger.reserve, user_id, len(original_text), REHUMANIZE_DESCRIPTION
            )
            job.reservation = reservation
            job.credits_charged = reservation.amount

        try:
            job.external_id = await self.client.request_rederivation(prior_external_id)
        except BaseException as exc:
            logger.warning("Rehumanize request failed for %s: %s", prior_external_id, exc)
            job.transition(JobStatus.FAILED)
            await self._release(job, reservation)
            raise

        job.transition(JobStatus.SUBMITTED)
        return await self._follow(job, reservation)

    async def _follow(self, job: Job, reservation: CreditReservation | None) -> Job:
        job.transition(JobStatus.POLLING)
        try:
            outcome = await poll_until_done(
                lambda: self.client.poll_status(job.external_id),
                self.policy,
                sleep=self.sleep,
            )
        except BaseException:
            job.transition(JobStatus.FAILED)
            await self._release(job, reservation)
            raise

        job.attempts = outcome.attempts
        if outcome.succeeded:
            job.output_text = outcome.output
            job.transition(JobStatus.SUCCEEDED)
            if reservation is not None:
                self.ledger.commit(reservation)
            return job

        job.transition(JobStatus.TIMED_OUT)
        await self._release(job, reservation)
        raise ProcessingTimedOut(job)

    async def _release(self, job: Job, reservation: CreditReservation | None) -> None:
        if reservation is None:
            return
        try:
            applied = await asyncio.to_thread(self.ledger.release, reservation, REFUND_DESCRIPTION)
        except Exception:
            logger.exception("Could not refund %s credits to user %s", reservation.amount, reservation.user_id)
            return
        if applied:
            job.credits_charged = 0

    async def refund(self, job: Job, description: str = DISCARDED_DESCRIPTION) -> bool:
        """Give back the credits of a succeeded job whose output could not be kept."""
        held = job.reservation
        if held is None or job.credits_charged == 0:
            return False
        try:
            applied = await asyncio.to_thread(self.ledger.refund, held.user_id, held.amount, description, held.reference)
        except Exception:
            logger.exception("Could not refund %s credits to user %s", held.amount, held.user_id)
            return False
        if applied:
            job.credits_charged = 0
        return applied
