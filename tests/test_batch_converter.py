"""Tests for the worker-pool batch converter."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import Counter
from typing import List

import pytest

from batch_converter import (
    BatchConverter,
    ConversionJob,
    JobStatus,
    plan_jobs,
    resolve_workers,
)
from errors import FaceUndetectedError
from face_locator import FaceLocator
from portrait_framer import PortraitFramer
from tests.fakes import ScriptedClassifier, encode, make_photo


class FakeFramer:
    """Writes a marker file per job; inputs named ``bad*`` fail."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def convert_file(self, input_path, output_path, *, use_exif=True, cancel_event=None) -> None:
        with self._lock:
            self.calls.append(input_path)
        if os.path.basename(input_path).startswith("bad"):
            raise FaceUndetectedError("could not detect face: face undetected")
        with open(output_path, "w") as fh:
            fh.write(input_path)


class SlowFramer(FakeFramer):
    """Holds each job briefly so two batches overlap."""

    def convert_file(self, input_path, output_path, *, use_exif=True, cancel_event=None) -> None:
        time.sleep(0.02)
        super().convert_file(input_path, output_path, use_exif=use_exif, cancel_event=cancel_event)


def _inputs(tmp_path, names) -> List[str]:
    src = tmp_path / "in"
    src.mkdir(exist_ok=True)
    paths = []
    for name in names:
        path = src / name
        path.write_bytes(b"x")
        paths.append(str(path))
    return paths


NAMES = [f"photo{i}.jpg" for i in range(7)]


class TestPlanning:
    def test_outputs_keep_basename(self) -> None:
        jobs = plan_jobs(["/a/b/one.jpg", "two.png"], "/out")
        assert jobs == [
            ConversionJob("/a/b/one.jpg", os.path.join("/out", "one.jpg")),
            ConversionJob("two.png", os.path.join("/out", "two.png")),
        ]

    def test_workers_clamped_to_job_count(self) -> None:
        assert resolve_workers(8, 3) == 3
        assert resolve_workers(2, 10) == 2
        assert resolve_workers(5, 0) == 1

    def test_default_workers_use_cpu_count(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "cpu_count", lambda: 4)
        assert resolve_workers(None, 10) == 4
        assert resolve_workers(0, 10) == 4


class TestBatchConverter:
    def test_every_job_reaches_a_terminal_state(self, tmp_path) -> None:
        framer = FakeFramer()
        out = tmp_path / "out"
        report = BatchConverter(framer, workers=3).convert(_inputs(tmp_path, NAMES), str(out))

        assert len(report.results) == 7
        assert len(report.succeeded) == 7
        assert Counter(r.job.input_path for r in report.results) == Counter(framer.calls)
        assert sorted(os.listdir(out)) == sorted(NAMES)

    def test_existing_outputs_are_skipped(self, tmp_path, caplog: pytest.LogCaptureFixture) -> None:
        inputs = _inputs(tmp_path, NAMES)
        out = str(tmp_path / "out")
        BatchConverter(FakeFramer(), workers=3).convert(inputs, out)

        caplog.set_level(logging.DEBUG, logger="batch_converter")
        framer = FakeFramer()
        report = BatchConverter(framer, workers=3).convert(inputs, out)

        assert len(report.skipped) == 7
        assert framer.calls == []
        skips = [r for r in caplog.records if "not overwriting existing file" in r.getMessage()]
        assert len(skips) == 7

    def test_overwrite_reconverts(self, tmp_path) -> None:
        inputs = _inputs(tmp_path, NAMES)
        out = str(tmp_path / "out")
        BatchConverter(FakeFramer(), workers=3).convert(inputs, out)

        framer = FakeFramer()
        report = BatchConverter(framer, workers=3, overwrite=True).convert(inputs, out)

        assert len(report.succeeded) == 7
        assert sorted(framer.calls) == sorted(inputs)

    def test_failure_is_isolated(self, tmp_path, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO, logger="batch_converter")
        inputs = _inputs(tmp_path, ["a.jpg", "bad.jpg", "c.jpg"])
        out = tmp_path / "out"
        report = BatchConverter(FakeFramer(), workers=2).convert(inputs, str(out))

        assert report.counts() == {"succeeded": 2, "skipped": 0, "failed": 1, "cancelled": 0}
        assert report.failed[0].job.input_path == inputs[1]
        assert "face undetected" in report.failed[0].error
        assert not (out / "bad.jpg").exists()

        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert inputs[1] in errors[0].getMessage()

    def test_cancelled_batch_converts_nothing(self, tmp_path) -> None:
        cancel = threading.Event()
        cancel.set()
        framer = FakeFramer()
        report = BatchConverter(framer, workers=2, cancel_event=cancel).convert(
            _inputs(tmp_path, NAMES), str(tmp_path / "out")
        )

        assert len(report.cancelled) == 7
        assert all(r.status is JobStatus.CANCELLED for r in report.results)
        assert framer.calls == []

    def test_concurrent_batches_keep_separate_reports(self, tmp_path) -> None:
        converter = BatchConverter(SlowFramer(), workers=2)
        first = _inputs(tmp_path, [f"a{i}.jpg" for i in range(5)])
        second = _inputs(tmp_path, [f"b{i}.jpg" for i in range(6)])
        reports = {}

        def run(name, inputs):
            reports[name] = converter.convert(inputs, str(tmp_path / name))

        threads = [
            threading.Thread(target=run, args=("first", first)),
            threading.Thread(target=run, args=("second", second)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(r.job.input_path for r in reports["first"].results) == sorted(first)
        assert sorted(r.job.input_path for r in reports["second"].results) == sorted(second)

    def test_empty_input(self, tmp_path) -> None:
        report = BatchConverter(FakeFramer()).convert([], str(tmp_path / "out"))
        assert report.results == []

    def test_real_framer_failures_do_not_stop_the_batch(self, tmp_path) -> None:
        src = tmp_path / "in"
        src.mkdir()
        inputs = []
        for i in range(3):
            path = src / f"blank{i}.png"
            path.write_bytes(encode(make_photo(120, 120, seed=i)))
            inputs.append(str(path))
        framer = PortraitFramer(locator=FaceLocator(ScriptedClassifier()))
        out = tmp_path / "out"

        report = BatchConverter(framer, workers=2).convert(inputs, str(out))

        assert len(report.failed) == 3
        assert os.listdir(out) == []
