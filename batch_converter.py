"""Concurrent batch conversion of image files into portraits.

A fixed pool of worker threads drains a shared job queue.  The queue is closed
with one sentinel per worker and the executor shutdown acts as the completion
barrier, so ``BatchConverter.convert`` returns only after every job has reached
a terminal state.  A failing job is logged and recorded; it never stops the
batch or touches its siblings.
"""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from errors import ConversionCancelledError
from portrait_framer import PortraitFramer

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConversionJob:
    input_path: str
    output_path: str


@dataclass(frozen=True)
class JobResult:
    job: ConversionJob
    status: JobStatus
    error: Optional[str] = None


@dataclass
class BatchReport:
    results: List[JobResult] = field(default_factory=list)

    def _with_status(self, status: JobStatus) -> List[JobResult]:
        return [r for r in self.results if r.status is status]

    @property
    def succeeded(self) -> List[JobResult]:
        return self._with_status(JobStatus.SUCCEEDED)

    @property
    def skipped(self) -> List[JobResult]:
        return self._with_status(JobStatus.SKIPPED)

    @property
    def failed(self) -> List[JobResult]:
        return self._with_status(JobStatus.FAILED)

    @property
    def cancelled(self) -> List[JobResult]:
        return self._with_status(JobStatus.CANCELLED)

    def counts(self) -> Dict[str, int]:
        return {status.value: len(self._with_status(status)) for status in JobStatus}


def plan_jobs(input_paths: Iterable[str], output_dir: str) -> List[ConversionJob]:
    """Map each input to ``output_dir/<basename>``."""
    return [
        ConversionJob(input_path=path, output_path=os.path.join(output_dir, os.path.basename(path)))
        for path in input_paths
    ]


def resolve_workers(requested: Optional[int], job_count: int) -> int:
    workers = requested if requested and requested > 0 else (os.cpu_count() or 1)
    return max(1, min(workers, job_count))


class BatchConverter:
    def __init__(
        self,
        framer: PortraitFramer,
        *,
        workers: Optional[int] = None,
        overwrite: bool = False,
        use_exif: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.framer = framer
        self.workers = workers
        self.overwrite = overwrite
        self.use_exif = use_exif
        self.cancel_event = cancel_event

    def convert(self, input_paths: Sequence[str], output_dir: str) -> BatchReport:
        """Convert every input into ``output_dir`` and report per-job outcomes."""
        if not input_paths:
            return BatchReport()

        os.makedirs(output_dir, exist_ok=True)
        jobs = plan_jobs(input_paths, output_dir)
        workers = resolve_workers(self.workers, len(jobs))
        logger.info("Converting %d image(s) with %d worker(s) into %s", len(jobs), workers, output_dir)

        work: "queue.Queue[Optional[ConversionJob]]" = queue.Queue()
        for job in jobs:
            work.put(job)
        for _ in range(workers):
            work.put(None)

        # Results belong to this call only.
        report = BatchReport()
        lock = threading.Lock()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="portrait-worker")
        futures = [executor.submit(self._worker, work, report.results, lock) for _ in range(workers)]
        executor.shutdown(wait=True)
        for future in futures:
            # Per-job errors are handled inside the loop.
            future.result()

        logger.info(
            "Batch finished: %d succeeded, %d skipped, %d failed, %d cancelled",
            len(report.succeeded),
            len(report.skipped),
            len(report.failed),
            len(report.cancelled),
        )
        return report

    def _worker(
        self,
        work: "queue.Queue[Optional[ConversionJob]]",
        results: List[JobResult],
        lock: threading.Lock,
    ) -> None:
        while True:
            job = work.get()
            if job is None:
                return
            result = self._run_job(job)
            with lock:
                results.append(result)

    def _run_job(self, job: ConversionJob) -> JobResult:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.debug("job cancelled input_path=%s output_path=%s", job.input_path, job.output_path)
            return JobResult(job=job, status=JobStatus.CANCELLED)

        if os.path.exists(job.output_path):
            if not self.overwrite:
                logger.debug(
                    "not overwriting existing file input_path=%s output_path=%s",
                    job.input_path,
                    job.output_path,
                )
                return JobResult(job=job, status=JobStatus.SKIPPED)
            logger.debug("overwriting file input_path=%s output_path=%s", job.input_path, job.output_path)

        try:
            self.framer.convert_file(
                job.input_path,
                job.output_path,
                use_exif=self.use_exif,
                cancel_event=self.cancel_event,
            )
        except ConversionCancelledError as exc:
            logger.info("conversion cancelled input_path=%s output_path=%s: %s", job.input_path, job.output_path, exc)
            return JobResult(job=job, status=JobStatus.CANCELLED, error=str(exc))
        except Exception as exc:
            logger.error(
                "conversion failed input_path=%s output_path=%s error=%s",
                job.input_path,
                job.output_path,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return JobResult(job=job, status=JobStatus.FAILED, error=str(exc))

        logger.info("portrait converted input_path=%s output_path=%s", job.input_path, job.output_path)
        return JobResult(job=job, status=JobStatus.SUCCEEDED)
