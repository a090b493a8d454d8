# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
#   "sqlalchemy",
# ]
# ///
"""App Install Performance Tester.

Measures how installing a Shopify app changes a storefront's Lighthouse
performance score: repeated baseline audits, a (simulated) app install,
repeated post-install audits, then an averaged score delta and a pass/fail
verdict. Tests run as background asyncio tasks and are tracked through a
persistent store that callers poll for progress.
"""

from __future__ import annotations

import abc
import argparse
import asyncio
import contextlib
import copy
import functools
import json
import logging
import math
import os
import sys
import tempfile
import threading
import time
import tomllib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

import httpx
import pandas as pd
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

__version__ = "0.1.0"

logger = logging.getLogger("app_perf_tester")

out_console = Console()
err_console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

VALID_AUDITORS = ("lighthouse", "pagespeed")
VALID_OUTPUT_FORMATS = ("csv", "json", "both")

DEFAULT_RUNS = 3
DEFAULT_AUDITOR = "lighthouse"
DEFAULT_INSTALL_DELAY = 5.0
DEFAULT_MAX_BROWSERS = 2
DEFAULT_AUDIT_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_LIGHTHOUSE_PATH = "lighthouse"
DEFAULT_DATABASE_URL = "sqlite:///perftest.db"
DEFAULT_OUTPUT_FORMAT = "csv"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)

# A post-install average more than 10 points below baseline fails the test.
PASS_THRESHOLD = -10.0

# Progress shown for a running test never reaches 100 until it completes.
RUNNING_PROGRESS_CAP = 90.0

FAIL_EXIT_CODE = 2
INSTALL_WEBHOOK_TIMEOUT = 60

# Desktop profile: matches a fast wired connection on a laptop screen.
LIGHTHOUSE_DESKTOP_FLAGS = [
    "--only-categories=performance",
    "--form-factor=desktop",
    "--throttling-method=simulate",
    "--throttling.rttMs=40",
    "--throttling.throughputKbps=10240",
    "--throttling.cpuSlowdownMultiplier=1",
    "--throttling.requestLatencyMs=0",
    "--throttling.downloadThroughputKbps=0",
    "--throttling.uploadThroughputKbps=0",
    "--screenEmulation.mobile=false",
    "--screenEmulation.width=1350",
    "--screenEmulation.height=940",
    "--screenEmulation.deviceScaleFactor=1",
    "--screenEmulation.disabled=false",
]
CHROME_FLAGS = ["--headless=new", "--no-sandbox", "--disable-setuid-sandbox"]

CONFIG_FILENAMES = ["perftest.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "perftest",
]


class TestStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PassStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class Phase(str, Enum):
    BASELINE = "baseline"
    POST_INSTALL = "post_install"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PerfTestError(Exception):
    """Base class for performance test errors."""


class AuditFailure(PerfTestError):
    """Raised when a single page audit cannot produce a score."""


class InstallationFailure(PerfTestError):
    """Raised when the app install step between phases fails."""


class PersistenceFailure(PerfTestError):
    """Raised when the test store cannot complete a read or write."""


class TestNotFoundError(PerfTestError):
    """Raised when a test id is unknown to the store."""

    def __init__(self, test_id: str):
        super().__init__(f"Performance test {test_id} not found")
        self.test_id = test_id


class TestNotRunningError(PerfTestError):
    """Raised when a write or step targets a test that already reached a terminal status."""

    def __init__(self, test_id: str, status: TestStatus):
        super().__init__(f"Performance test {test_id} is {status.value}, not running")
        self.test_id = test_id
        self.status = status


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuditResult:
    score: float
    report: str
    duration_ms: int
    user_agent: str


@dataclass
class PerformanceRun:
    test_id: str
    test_type: Phase
    run_number: int
    score: float
    report: str
    test_url: str
    user_agent: str
    duration_ms: int
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self, include_report: bool = False) -> dict:
        record = {
            "test_id": self.test_id,
            "test_type": self.test_type.value,
            "run_number": self.run_number,
            "score": self.score,
            "test_url": self.test_url,
            "user_agent": self.user_agent,
            "duration_ms": self.duration_ms,
            "created_at": self.created_at.isoformat(),
        }
        if include_report:
            record["report"] = self.report
        return record


@dataclass
class PerformanceTest:
    id: str
    shop: str
    app_id: str
    app_name: str
    test_store_url: str
    runs_per_phase: int = DEFAULT_RUNS
    status: TestStatus = TestStatus.RUNNING
    baseline_score: float | None = None
    post_install_score: float | None = None
    score_delta: float | None = None
    pass_status: PassStatus | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    results: list[PerformanceRun] = field(default_factory=list)

    def to_dict(self, include_reports: bool = False) -> dict:
        return {
            "id": self.id,
            "shop": self.shop,
            "app_id": self.app_id,
            "app_name": self.app_name,
            "test_store_url": self.test_store_url,
            "runs_per_phase": self.runs_per_phase,
            "status": self.status.value,
            "baseline_score": self.baseline_score,
            "post_install_score": self.post_install_score,
            "score_delta": self.score_delta,
            "pass_status": self.pass_status.value if self.pass_status else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "results": [run.to_dict(include_reports) for run in self.results],
        }


@dataclass
class PhaseResult:
    average_score: float
    runs: list[AuditResult]


def _sort_runs(runs: list[PerformanceRun]) -> list[PerformanceRun]:
    return sorted(runs, key=lambda run: (run.test_type.value, run.run_number))


def evaluate_pass_status(score_delta: float) -> PassStatus:
    """Apply the fixed regression threshold to a score delta."""
    return PassStatus.PASS if score_delta >= PASS_THRESHOLD else PassStatus.FAIL


def estimate_progress(status: TestStatus | str, runs_persisted: int, expected_runs: int) -> float:
    """Estimate completion percentage from persisted run count.

    Completed tests report 100, failed and cancelled tests 0. Running tests
    report their share of expected runs, capped below 100 until the final
    status write lands.
    """
    status = TestStatus(status)
    if status is TestStatus.COMPLETED:
        return 100.0
    if status is not TestStatus.RUNNING or expected_runs <= 0:
        return 0.0
    return min(runs_persisted / expected_runs * 100, RUNNING_PROGRESS_CAP)


def progress_of(test: dict) -> float:
    """Progress of a serialized test, measured against the run count it was started with."""
    expected_runs = test.get("runs_per_phase", DEFAULT_RUNS) * len(Phase)
    return estimate_progress(test["status"], len(test.get("results", [])), expected_runs)


# ---------------------------------------------------------------------------
# Test Store
# ---------------------------------------------------------------------------


class TestStore(abc.ABC):
    """Durable record of tests and their runs.

    Mutating calls only apply while the test is ``running`` unless
    ``require_running`` is False; terminal statuses never change again.
    """

    @abc.abstractmethod
    async def create_test(
        self,
        shop: str,
        app_id: str,
        app_name: str,
        test_store_url: str,
        runs_per_phase: int = DEFAULT_RUNS,
    ) -> PerformanceTest:
        ...

    @abc.abstractmethod
    async def update_test(self, test_id: str, fields: dict, require_running: bool = True) -> PerformanceTest:
        ...

    @abc.abstractmethod
    async def add_run(
        self,
        test_id: str,
        test_type: Phase | str,
        run_number: int,
        audit: AuditResult,
        test_url: str,
    ) -> PerformanceRun:
        ...

    @abc.abstractmethod
    async def get_test(self, test_id: str) -> PerformanceTest | None:
        ...

    @abc.abstractmethod
    async def get_status(self, test_id: str) -> TestStatus | None:
        ...

    @abc.abstractmethod
    async def list_tests(self, shop: str) -> list[PerformanceTest]:
        ...

    @abc.abstractmethod
    async def delete_test(self, test_id: str) -> bool:
        ...


UPDATABLE_FIELDS = {
    "status",
    "baseline_score",
    "post_install_score",
    "score_delta",
    "pass_status",
}


def _normalize_fields(fields: dict) -> dict:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update performance test fields: {', '.join(sorted(unknown))}")
    values = dict(fields)
    if "status" in values:
        values["status"] = TestStatus(values["status"])
    if values.get("pass_status") is not None:
        values["pass_status"] = PassStatus(values["pass_status"])
    return values


class MemoryTestStore(TestStore):
    """In-process store; suitable for tests and single-process embedding."""

    def __init__(self):
        self._tests: dict[str, PerformanceTest] = {}
        self._order: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def create_test(
        self,
        shop: str,
        app_id: str,
        app_name: str,
        test_store_url: str,
        runs_per_phase: int = DEFAULT_RUNS,
    ) -> PerformanceTest:
        test = PerformanceTest(
            id=str(uuid.uuid4()),
            shop=shop,
            app_id=app_id,
            app_name=app_name,
            test_store_url=test_store_url,
            runs_per_phase=runs_per_phase,
        )
        async with self._lock:
            self._tests[test.id] = test
            self._order[test.id] = len(self._order)
            return copy.deepcopy(test)

    async def update_test(self, test_id: str, fields: dict, require_running: bool = True) -> PerformanceTest:
        values = _normalize_fields(fields)
        async with self._lock:
            test = self._require(test_id, require_running)
            for key, value in values.items():
                setattr(test, key, value)
            test.updated_at = _utcnow()
            return copy.deepcopy(test)

    async def add_run(
        self,
        test_id: str,
        test_type: Phase | str,
        run_number: int,
        audit: AuditResult,
        test_url: str,
    ) -> PerformanceRun:
        async with self._lock:
            test = self._require(test_id, require_running=True)
            phase = Phase(test_type)
            if any(r.test_type is phase and r.run_number == run_number for r in test.results):
                raise PersistenceFailure(
                    f"Run {run_number} of {phase.value} already recorded for test {test_id}"
                )
            run = PerformanceRun(
                test_id=test_id,
                test_type=phase,
                run_number=run_number,
                score=audit.score,
                report=audit.report,
                test_url=test_url,
                user_agent=audit.user_agent,
                duration_ms=audit.duration_ms,
            )
            test.results = _sort_runs(test.results + [run])
            test.updated_at = _utcnow()
            return copy.deepcopy(run)

    async def get_test(self, test_id: str) -> PerformanceTest | None:
        async with self._lock:
            test = self._tests.get(test_id)
            return copy.deepcopy(test) if test else None

    async def get_status(self, test_id: str) -> TestStatus | None:
        async with self._lock:
            test = self._tests.get(test_id)
            return test.status if test else None

    async def list_tests(self, shop: str) -> list[PerformanceTest]:
        async with self._lock:
            tests = [t for t in self._tests.values() if t.shop == shop]
            tests.sort(key=lambda t: (t.created_at, self._order[t.id]), reverse=True)
            return copy.deepcopy(tests)

    async def delete_test(self, test_id: str) -> bool:
        async with self._lock:
            self._order.pop(test_id, None)
            return self._tests.pop(test_id, None) is not None

    def _require(self, test_id: str, require_running: bool) -> PerformanceTest:
        test = self._tests.get(test_id)
        if test is None:
            raise TestNotFoundError(test_id)
        if require_running and test.status is not TestStatus.RUNNING:
            raise TestNotRunningError(test_id, test.status)
        return test


Base = declarative_base()


class PerformanceTestRecord(Base):
    __tablename__ = "performance_tests"

    id = Column(String(36), primary_key=True)
    shop = Column(String(255), nullable=False, index=True)
    app_id = Column(String(255), nullable=False)
    app_name = Column(String(255), nullable=False)
    test_store_url = Column(String(2048), nullable=False)
    runs_per_phase = Column(Integer, nullable=False, default=DEFAULT_RUNS)
    status = Column(String(20), nullable=False, default=TestStatus.RUNNING.value)
    baseline_score = Column(Float)
    post_install_score = Column(Float)
    score_delta = Column(Float)
    pass_status = Column(String(10))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    results = relationship(
        "PerformanceRunRecord",
        back_populates="test",
        cascade="all, delete-orphan",
    )


class PerformanceRunRecord(Base):
    __tablename__ = "performance_test_results"
    __table_args__ = (
        UniqueConstraint("performance_test_id", "test_type", "run_number", name="uq_run_per_phase"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    performance_test_id = Column(
        String(36),
        ForeignKey("performance_tests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    test_type = Column(String(20), nullable=False)
    run_number = Column(Integer, nullable=False)
    lighthouse_score = Column(Float, nullable=False)
    lighthouse_report = Column(Text, nullable=False)
    test_url = Column(String(2048), nullable=False)
    user_agent = Column(String(512), nullable=False)
    test_duration = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    test = relationship("PerformanceTestRecord", back_populates="results")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _run_from_record(record: PerformanceRunRecord) -> PerformanceRun:
    return PerformanceRun(
        test_id=record.performance_test_id,
        test_type=Phase(record.test_type),
        run_number=record.run_number,
        score=record.lighthouse_score,
        report=record.lighthouse_report,
        test_url=record.test_url,
        user_agent=record.user_agent,
        duration_ms=record.test_duration,
        created_at=_as_utc(record.created_at),
    )


def _test_from_record(record: PerformanceTestRecord) -> PerformanceTest:
    return PerformanceTest(
        id=record.id,
        shop=record.shop,
        app_id=record.app_id,
        app_name=record.app_name,
        test_store_url=record.test_store_url,
        runs_per_phase=record.runs_per_phase,
        status=TestStatus(record.status),
        baseline_score=record.baseline_score,
        post_install_score=record.post_install_score,
        score_delta=record.score_delta,
        pass_status=PassStatus(record.pass_status) if record.pass_status else None,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
        results=_sort_runs([_run_from_record(r) for r in record.results]),
    )


class SQLTestStore(TestStore):
    """SQLAlchemy-backed store. Sessions run in worker threads.

    An in-memory SQLite URL shares a single connection across threads, so
    sessions against it are serialized.
    """

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL):
        engine_kwargs: dict = {"pool_pre_ping": True}
        shared_connection = False
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
                engine_kwargs["poolclass"] = StaticPool
                shared_connection = True
        try:
            self._engine = create_engine(database_url, **engine_kwargs)
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot open test store {database_url}: {exc}") from exc
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._connection_lock = threading.Lock() if shared_connection else None

    def close(self) -> None:
        self._engine.dispose()

    def _serialized(self, func, *args):
        if self._connection_lock is None:
            return func(*args)
        with self._connection_lock:
            return func(*args)

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(self._serialized, func, *args)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Test store error: {exc}") from exc

    async def create_test(
        self,
        shop: str,
        app_id: str,
        app_name: str,
        test_store_url: str,
        runs_per_phase: int = DEFAULT_RUNS,
    ) -> PerformanceTest:
        return await self._call(self._create_test, shop, app_id, app_name, test_store_url, runs_per_phase)

    async def update_test(self, test_id: str, fields: dict, require_running: bool = True) -> PerformanceTest:
        values = _normalize_fields(fields)
        return await self._call(self._update_test, test_id, values, require_running)

    async def add_run(
        self,
        test_id: str,
        test_type: Phase | str,
        run_number: int,
        audit: AuditResult,
        test_url: str,
    ) -> PerformanceRun:
        return await self._call(self._add_run, test_id, Phase(test_type), run_number, audit, test_url)

    async def get_test(self, test_id: str) -> PerformanceTest | None:
        return await self._call(self._get_test, test_id)

    async def get_status(self, test_id: str) -> TestStatus | None:
        return await self._call(self._get_status, test_id)

    async def list_tests(self, shop: str) -> list[PerformanceTest]:
        return await self._call(self._list_tests, shop)

    async def delete_test(self, test_id: str) -> bool:
        return await self._call(self._delete_test, test_id)

    def _create_test(self, shop: str, app_id: str, app_name: str, test_store_url: str, runs_per_phase: int) -> PerformanceTest:
        now = _utcnow()
        record = PerformanceTestRecord(
            id=str(uuid.uuid4()),
            shop=shop,
            app_id=app_id,
            app_name=app_name,
            test_store_url=test_store_url,
            runs_per_phase=runs_per_phase,
            status=TestStatus.RUNNING.value,
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as session, session.begin():
            session.add(record)
        return self._get_test(record.id)

    def _claim_running(self, session, test_id: str, values: dict, require_running: bool) -> None:
        """Conditionally update one test row; raise if the guard rejects it."""
        stmt = update(PerformanceTestRecord).where(PerformanceTestRecord.id == test_id)
        if require_running:
            stmt = stmt.where(PerformanceTestRecord.status == TestStatus.RUNNING.value)
        result = session.execute(
            stmt.values(**values, updated_at=_utcnow()).execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return
        current = session.execute(
            select(PerformanceTestRecord.status).where(PerformanceTestRecord.id == test_id)
        ).scalar_one_or_none()
        if current is None:
            raise TestNotFoundError(test_id)
        raise TestNotRunningError(test_id, TestStatus(current))

    def _update_test(self, test_id, values, require_running) -> PerformanceTest:
        row = {key: (value.value if isinstance(value, Enum) else value) for key, value in values.items()}
        with self._session_factory() as session, session.begin():
            self._claim_running(session, test_id, row, require_running)
        return self._get_test(test_id)

    def _add_run(self, test_id, phase, run_number, audit, test_url) -> PerformanceRun:
        record = PerformanceRunRecord(
            performance_test_id=test_id,
            test_type=phase.value,
            run_number=run_number,
            lighthouse_score=audit.score,
            lighthouse_report=audit.report,
            test_url=test_url,
            user_agent=audit.user_agent,
            test_duration=audit.duration_ms,
            created_at=_utcnow(),
        )
        with self._session_factory() as session, session.begin():
            # Touching the parent row first holds its write lock for the insert
            self._claim_running(session, test_id, {}, require_running=True)
            session.add(record)
        return _run_from_record(record)

    def _get_test(self, test_id) -> PerformanceTest | None:
        with self._session_factory() as session:
            record = session.get(PerformanceTestRecord, test_id)
            return _test_from_record(record) if record else None

    def _get_status(self, test_id) -> TestStatus | None:
        with self._session_factory() as session:
            status = session.execute(
                select(PerformanceTestRecord.status).where(PerformanceTestRecord.id == test_id)
            ).scalar_one_or_none()
            return TestStatus(status) if status else None

    def _list_tests(self, shop) -> list[PerformanceTest]:
        with self._session_factory() as session:
            records = session.execute(
                select(PerformanceTestRecord)
                .where(PerformanceTestRecord.shop == shop)
                .order_by(PerformanceTestRecord.created_at.desc())
            ).scalars().all()
            return [_test_from_record(r) for r in records]

    def _delete_test(self, test_id) -> bool:
        with self._session_factory() as session, session.begin():
            record = session.get(PerformanceTestRecord, test_id)
            if record is None:
                return False
            session.delete(record)
            return True


# ---------------------------------------------------------------------------
# Auditor Client
# ---------------------------------------------------------------------------


def build_audit_result(lighthouse_result: dict, started: float, user_agent: str | None = None) -> AuditResult:
    """Turn a Lighthouse result (lhr) into an AuditResult.

    ``started`` is the ``time.monotonic()`` reading taken before the audit.
    """
    performance = lighthouse_result.get("categories", {}).get("performance", {})
    score = performance.get("score")
    if score is None:
        raise AuditFailure(
            f"Lighthouse returned no performance score for {lighthouse_result.get('finalUrl', 'page')}"
        )
    effective_agent = (
        user_agent
        or lighthouse_result.get("environment", {}).get("networkUserAgent")
        or lighthouse_result.get("userAgent", "")
    )
    return AuditResult(
        score=float(score) * 100,
        report=json.dumps(lighthouse_result),
        duration_ms=round((time.monotonic() - started) * 1000),
        user_agent=effective_agent,
    )


class Auditor(abc.ABC):
    """Runs one page audit at a time per call; caps simultaneous browsers."""

    def __init__(self, max_browsers: int | None = DEFAULT_MAX_BROWSERS):
        self.max_browsers = max_browsers
        self._semaphore = asyncio.Semaphore(max_browsers) if max_browsers else None

    def _browser_slot(self):
        return self._semaphore if self._semaphore is not None else contextlib.nullcontext()

    @abc.abstractmethod
    async def audit(self, url: str, user_agent: str | None = None) -> AuditResult:
        """Audit ``url`` once and return its performance score."""


class LighthouseAuditor(Auditor):
    """Audits with a local ``lighthouse`` CLI and headless Chrome."""

    def __init__(
        self,
        lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH,
        timeout: float = DEFAULT_AUDIT_TIMEOUT,
        max_browsers: int | None = DEFAULT_MAX_BROWSERS,
    ):
        super().__init__(max_browsers)
        self.lighthouse_path = lighthouse_path
        self.timeout = timeout

    def build_command(self, url: str, profile_dir: str, user_agent: str | None = None) -> list[str]:
        chrome_flags = " ".join(CHROME_FLAGS + [f"--user-data-dir={profile_dir}"])
        cmd = [
            self.lighthouse_path,
            url,
            "--output=json",
            "--output-path=stdout",
            "--quiet",
            f"--chrome-flags={chrome_flags}",
            *LIGHTHOUSE_DESKTOP_FLAGS,
        ]
        if user_agent:
            cmd.append(f"--emulated-user-agent={user_agent}")
        return cmd

    async def audit(self, url: str, user_agent: str | None = None) -> AuditResult:
        async with self._browser_slot():
            # Duration covers the audit only, not time queued for a browser slot
            started = time.monotonic()
            # Fresh Chrome profile per audit; removed however the audit ends
            with tempfile.TemporaryDirectory(prefix="perftest-chrome-") as profile_dir:
                cmd = self.build_command(url, profile_dir, user_agent)
                logger.debug("Launching %s", " ".join(cmd))
                try:
                    proc = await asyncio.create_subprocess_exec(
                        *cmd,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                    )
                except OSError as exc:
                    raise AuditFailure(f"Cannot launch {self.lighthouse_path}: {exc}") from exc
                try:
                    stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
                except asyncio.TimeoutError as exc:
                    raise AuditFailure(f"Lighthouse timed out after {self.timeout:g}s for {url}") from exc
                finally:
                    if proc.returncode is None:
                        with contextlib.suppress(ProcessLookupError):
                            proc.kill()
                        await proc.wait()

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-500:]
            raise AuditFailure(f"Lighthouse exited with code {proc.returncode} for {url}: {detail}")
        try:
            lighthouse_result = json.loads(stdout)
        except ValueError as exc:
            raise AuditFailure(f"Lighthouse produced unreadable JSON for {url}: {exc}") from exc
        if lighthouse_result.get("runtimeError"):
            message = lighthouse_result["runtimeError"].get("message", "unknown runtime error")
            raise AuditFailure(f"Lighthouse could not load {url}: {message}")
        return build_audit_result(lighthouse_result, started, user_agent)


class PageSpeedAuditor(Auditor):
    """Audits through the hosted PageSpeed Insights API.

    The hosted service picks its own user agent, so the one reported by
    Lighthouse is returned regardless of what was requested.
    """

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = DEFAULT_AUDIT_TIMEOUT,
        max_browsers: int | None = DEFAULT_MAX_BROWSERS,
        client: httpx.AsyncClient | None = None,
        strategy: str = "desktop",
    ):
        super().__init__(max_browsers)
        self.api_key = api_key
        self.timeout = timeout
        self.client = client
        self.strategy = strategy

    async def _get(self, params: dict) -> httpx.Response:
        if self.client is not None:
            return await self.client.get(PAGESPEED_API_URL, params=params, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(PAGESPEED_API_URL, params=params)

    async def audit(self, url: str, user_agent: str | None = None) -> AuditResult:
        params = {"url": url, "strategy": self.strategy, "category": "performance"}
        if self.api_key:
            params["key"] = self.api_key

        async with self._browser_slot():
            started = time.monotonic()
            try:
                response = await self._get(params)
            except (httpx.HTTPError, OSError) as exc:
                raise AuditFailure(f"PageSpeed request failed for {url}: {exc}") from exc

        if response.status_code != 200:
            try:
                detail = response.json().get("error", {}).get("message", response.text[:200])
            except (ValueError, AttributeError):
                detail = response.text[:200]
            raise AuditFailure(f"HTTP {response.status_code} for {url}: {detail}")

        try:
            data = response.json()
        except ValueError as exc:
            raise AuditFailure(f"PageSpeed returned invalid JSON for {url}") from exc
        if "error" in data:
            message = data["error"].get("message", "unknown error")
            raise AuditFailure(f"PageSpeed error for {url}: {message}")
        if "lighthouseResult" not in data:
            raise AuditFailure(f"No lighthouseResult in PageSpeed response for {url}")
        return build_audit_result(data["lighthouseResult"], started)


# ---------------------------------------------------------------------------
# Measurement Runner
# ---------------------------------------------------------------------------


class MeasurementRunner:
    def __init__(self, auditor: Auditor, store: TestStore, user_agent: str = DEFAULT_USER_AGENT):
        self.auditor = auditor
        self.store = store
        self.user_agent = user_agent

    async def ensure_running(self, test_id: str) -> None:
        """Raise TestNotRunningError unless the stored test is still running."""
        status = await self.store.get_status(test_id)
        if status is None:
            raise TestNotFoundError(test_id)
        if status is not TestStatus.RUNNING:
            raise TestNotRunningError(test_id, status)

    async def run_phase(
        self,
        url: str,
        phase: Phase | str,
        test_id: str,
        run_count: int = DEFAULT_RUNS,
    ) -> PhaseResult:
        """Audit ``url`` ``run_count`` times in sequence, persisting every run.

        The first failed audit aborts the phase; runs persisted before it are
        kept and no average is produced.
        """
        if run_count < 1:
            raise ValueError("run_count must be at least 1")
        phase = Phase(phase)

        results: list[AuditResult] = []
        for run_number in range(1, run_count + 1):
            await self.ensure_running(test_id)
            logger.info("Running %s audit %d/%d for %s", phase.value, run_number, run_count, url)
            try:
                result = await self.auditor.audit(url, self.user_agent)
            except AuditFailure as exc:
                logger.error("%s audit %d/%d failed: %s", phase.value, run_number, run_count, exc)
                raise
            await self.store.add_run(test_id, phase, run_number, result, url)
            results.append(result)
            logger.info("Audit %d completed: %.1f points in %d ms", run_number, result.score, result.duration_ms)

        average_score = sum(r.score for r in results) / len(results)
        logger.info("Average %s score: %s", phase.value, average_score)
        return PhaseResult(average_score=average_score, runs=results)


# ---------------------------------------------------------------------------
# Installation
# ---------------------------------------------------------------------------


class InstallationSimulator:
    """Fixed-delay stand-in for installing the app on the test store."""

    def __init__(self, delay: float = DEFAULT_INSTALL_DELAY):
        self.delay = delay

    async def install(self, test_store_url: str, app_id: str) -> None:
        if not app_id or not test_store_url:
            raise InstallationFailure("Both an app id and a test store URL are required to install")
        logger.info("Simulating installation of app %s on %s", app_id, test_store_url)
        await asyncio.sleep(self.delay)
        logger.info("App installation completed")


class WebhookInstaller:
    """Delegates the install to an external service over HTTP."""

    def __init__(self, webhook_url: str, timeout: float = INSTALL_WEBHOOK_TIMEOUT, client: httpx.AsyncClient | None = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.client = client

    async def install(self, test_store_url: str, app_id: str) -> None:
        payload = {"test_store_url": test_store_url, "app_id": app_id}
        logger.info("Requesting installation of app %s on %s", app_id, test_store_url)
        try:
            if self.client is not None:
                response = await self.client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except (httpx.HTTPError, OSError) as exc:
            raise InstallationFailure(f"Install webhook failed for app {app_id}: {exc}") from exc
        logger.info("App installation completed")


# ---------------------------------------------------------------------------
# Test Orchestrator
# ---------------------------------------------------------------------------


class PerformanceTester:
    """Runs baseline -> install -> post-install tests and tracks them in a store."""

    def __init__(
        self,
        store: TestStore,
        auditor: Auditor,
        installer: InstallationSimulator | WebhookInstaller,
        runs: int = DEFAULT_RUNS,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        if runs < 1:
            raise ValueError("runs must be at least 1")
        self.store = store
        self.installer = installer
        self.runs = runs
        self.runner = MeasurementRunner(auditor, store, user_agent)
        self._tasks: dict[str, asyncio.Task] = {}

    async def create_test(self, shop: str, app_id: str, app_name: str, test_store_url: str) -> PerformanceTest:
        return await self.store.create_test(shop, app_id, app_name, test_store_url, runs_per_phase=self.runs)

    async def run_full_test(
        self,
        shop: str,
        app_id: str,
        app_name: str,
        test_store_url: str,
        test: PerformanceTest | None = None,
    ) -> dict:
        """Run a complete test and return its outcome.

        Pass ``test`` to drive a record already created with create_test();
        otherwise a new one is created. Each phase runs the record's
        ``runs_per_phase`` audits. Failures mark the test failed and
        propagate; cancelling the task marks it cancelled.
        """
        if test is None:
            test = await self.create_test(shop, app_id, app_name, test_store_url)
        test_id = test.id
        runs = test.runs_per_phase

        try:
            logger.info("Starting performance test %s for %s on %s", test_id, app_name, test_store_url)

            baseline = await self.runner.run_phase(test_store_url, Phase.BASELINE, test_id, runs)
            await self.store.update_test(test_id, {"baseline_score": baseline.average_score})

            await self.installer.install(test_store_url, app_id)
            await self.runner.ensure_running(test_id)

            post_install = await self.runner.run_phase(test_store_url, Phase.POST_INSTALL, test_id, runs)
            await self.store.update_test(test_id, {"post_install_score": post_install.average_score})

            score_delta = post_install.average_score - baseline.average_score
            pass_status = evaluate_pass_status(score_delta)
            await self.store.update_test(
                test_id,
                {
                    "score_delta": score_delta,
                    "pass_status": pass_status,
                    "status": TestStatus.COMPLETED,
                },
            )
        except TestNotRunningError as exc:
            logger.warning("Performance test %s stopped: %s", test_id, exc)
            raise
        except asyncio.CancelledError:
            logger.warning("Performance test %s interrupted", test_id)
            await self._mark_terminal(test_id, TestStatus.CANCELLED)
            raise
        except Exception as exc:
            logger.error("Performance test %s failed: %s", test_id, exc)
            await self._mark_terminal(test_id, TestStatus.FAILED)
            raise

        logger.info(
            "Performance test %s completed: baseline %s, post-install %s, delta %s, %s",
            test_id,
            baseline.average_score,
            post_install.average_score,
            score_delta,
            pass_status.value,
        )
        return {
            "id": test_id,
            "baseline_score": baseline.average_score,
            "post_install_score": post_install.average_score,
            "score_delta": score_delta,
            "pass_status": pass_status.value,
            "status": TestStatus.COMPLETED.value,
        }

    async def _mark_terminal(self, test_id: str, status: TestStatus) -> None:
        try:
            await self.store.update_test(test_id, {"status": status})
        except (TestNotRunningError, TestNotFoundError) as exc:
            logger.debug("Not marking %s %s: %s", test_id, status.value, exc)
        except PersistenceFailure as exc:
            logger.error("Could not record test %s as %s: %s", test_id, status.value, exc)

    async def start_test(self, shop: str, app_id: str, app_name: str, test_store_url: str) -> dict:
        """Register a test and run it as a background task. Returns ``{"test_id": ...}`` at once."""
        test = await self.create_test(shop, app_id, app_name, test_store_url)
        task = asyncio.create_task(
            self.run_full_test(shop, app_id, app_name, test_store_url, test=test),
            name=f"perftest-{test.id}",
        )
        self._tasks[test.id] = task
        task.add_done_callback(functools.partial(self._on_background_done, test.id))
        return {"test_id": test.id}

    def _on_background_done(self, test_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(test_id, None)
        if task.cancelled():
            logger.warning("Performance test %s task was cancelled", test_id)
            return
        exc = task.exception()
        if exc is None:
            logger.info("Performance test %s finished: %s", test_id, task.result())
        elif isinstance(exc, TestNotRunningError):
            logger.info("Performance test %s ended early: %s", test_id, exc)
        else:
            logger.error("Performance test %s failed: %s", test_id, exc)

    async def join(self, test_id: str | None = None) -> None:
        """Wait for background tests (one or all) to settle."""
        if test_id is not None:
            tasks = [self._tasks[test_id]] if test_id in self._tasks else []
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks)

    async def get_test(self, test_id: str, include_reports: bool = False) -> dict | None:
        test = await self.store.get_test(test_id)
        return test.to_dict(include_reports) if test else None

    async def list_tests(self, shop: str) -> list[dict]:
        return [test.to_dict() for test in await self.store.list_tests(shop)]

    async def cancel_test(self, test_id: str) -> bool:
        """Move a running test to cancelled. In-flight audits finish but are not recorded."""
        try:
            await self.store.update_test(test_id, {"status": TestStatus.CANCELLED})
        except TestNotRunningError as exc:
            logger.info("Not cancelling %s: %s", test_id, exc)
            return False
        logger.info("Performance test %s cancelled", test_id)
        return True


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path(search_paths: list[Path] | None = None) -> Path | None:
    """Return the first ``perftest.toml`` found, searching the CWD before the user config dir."""
    candidates = (
        directory / filename
        for directory in (search_paths or CONFIG_SEARCH_PATHS)
        for filename in CONFIG_FILENAMES
    )
    return next((path for path in candidates if path.is_file()), None)


def _config_error(config_path: Path, message: str):
    err_console.print(f"[red]Error:[/red] {config_path}: {message}")
    sys.exit(1)


def load_config(config_path: Path | None) -> dict:
    """Read a perftest TOML file. Exits on unreadable files or misshapen tables."""
    if config_path is None:
        return {}
    try:
        config = tomllib.loads(Path(config_path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        _config_error(config_path, f"cannot read config file: {exc}")
    except tomllib.TOMLDecodeError as exc:
        _config_error(config_path, f"malformed config file: {exc}")

    if not isinstance(config.get("settings", {}), dict):
        _config_error(config_path, "[settings] must be a table")
    profiles = config.get("profiles", {})
    if not isinstance(profiles, dict) or not all(isinstance(p, dict) for p in profiles.values()):
        _config_error(config_path, "every [profiles.<name>] entry must be a table")
    return config


CONFIG_KEYS = (
    "database_url",
    "auditor",
    "api_key",
    "runs",
    "user_agent",
    "install_delay",
    "install_webhook",
    "max_browsers",
    "lighthouse_path",
    "audit_timeout",
    "poll_interval",
    "shop",
    "output_dir",
    "output_format",
    "verbose",
)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Environment variables (api key, database URL)
      5. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            err_console.print(f"[red]Error:[/red] profile '{profile_name}' not found in config. Available: {available}")
            sys.exit(1)
        profile = profiles[profile_name]

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for key in CONFIG_KEYS:
        if key in cli_explicit:
            continue
        if key in profile:
            setattr(args, key, profile[key])
        elif key in settings:
            setattr(args, key, settings[key])

    env_fallbacks = {
        "api_key": "PAGESPEED_API_KEY",
        "database_url": "PERFTEST_DATABASE_URL",
    }
    for key, env_name in env_fallbacks.items():
        if key in cli_explicit or key in profile or key in settings:
            continue
        env_value = os.environ.get(env_name)
        if env_value:
            setattr(args, key, env_value)

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def _mark_explicit(namespace: argparse.Namespace, dest: str) -> None:
    # Read by apply_profile: explicit flags outrank config values
    namespace._explicit_args = [*getattr(namespace, "_explicit_args", []), dest]


class TrackingAction(argparse.Action):
    """Store the value and remember that the flag was given on the command line."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        _mark_explicit(namespace, self.dest)


class TrackingStoreTrueAction(TrackingAction):
    """Boolean switch variant of TrackingAction."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings, dest, nargs=0, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        super().__call__(parser, namespace, True, option_string)


class TrackingSubParsersAction(argparse._SubParsersAction):
    """Subcommand dispatch that keeps flags tracked before the subcommand name.

    argparse copies the subcommand's namespace over the parent's, which would
    otherwise replace the parent's ``_explicit_args``.
    """

    def __call__(self, parser, namespace, values, option_string=None):
        parent_explicit = list(getattr(namespace, "_explicit_args", []))
        super().__call__(parser, namespace, values, option_string)
        merged = parent_explicit + getattr(namespace, "_explicit_args", [])
        namespace._explicit_args = list(dict.fromkeys(merged))


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="app-perf",
        description="Measure the storefront performance impact of installing a Shopify app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Debug logging to stderr")
    parser.add_argument("--database-url", dest="database_url", action=TrackingAction, default=DEFAULT_DATABASE_URL, help="SQLAlchemy URL of the test store (or set PERFTEST_DATABASE_URL)")
    parser.add_argument("--auditor", dest="auditor", action=TrackingAction, default=DEFAULT_AUDITOR, choices=VALID_AUDITORS, help="Local lighthouse CLI or hosted PageSpeed API")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed API key (or set PAGESPEED_API_KEY)")
    parser.add_argument("--max-browsers", dest="max_browsers", action=TrackingAction, type=int, default=DEFAULT_MAX_BROWSERS, help="Max simultaneous audits, 0 for unlimited")
    parser.add_argument("--lighthouse-path", dest="lighthouse_path", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_PATH, help="Path to the lighthouse executable")
    parser.add_argument("--audit-timeout", dest="audit_timeout", action=TrackingAction, type=float, default=DEFAULT_AUDIT_TIMEOUT, help="Seconds before a single audit is abandoned")

    subparsers = parser.add_subparsers(dest="command", help="Available commands", action=TrackingSubParsersAction)

    # --- audit ---
    audit_parser = subparsers.add_parser("audit", help="Run a single audit against a URL")
    audit_parser.add_argument("url", help="URL to audit")
    audit_parser.add_argument("--user-agent", dest="user_agent", action=TrackingAction, default=DEFAULT_USER_AGENT, help="User agent to emulate")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Run a full baseline/install/post-install test")
    run_parser.add_argument("test_store_url", help="Storefront URL to measure")
    run_parser.add_argument("--shop", dest="shop", action=TrackingAction, default=None, help="Owning shop domain")
    run_parser.add_argument("--app-id", dest="app_id", action=TrackingAction, required=True, help="Identifier of the app to install")
    run_parser.add_argument("--app-name", dest="app_name", action=TrackingAction, default=None, help="Display name of the app (defaults to the app id)")
    run_parser.add_argument("-n", "--runs", dest="runs", action=TrackingAction, type=int, default=DEFAULT_RUNS, help="Audits per phase (default: 3)")
    run_parser.add_argument("--user-agent", dest="user_agent", action=TrackingAction, default=DEFAULT_USER_AGENT, help="User agent to emulate")
    run_parser.add_argument("--install-delay", dest="install_delay", action=TrackingAction, type=float, default=DEFAULT_INSTALL_DELAY, help="Seconds the simulated install takes")
    run_parser.add_argument("--install-webhook", dest="install_webhook", action=TrackingAction, default=None, help="URL to POST install requests to instead of simulating")
    run_parser.add_argument("--poll-interval", dest="poll_interval", action=TrackingAction, type=float, default=DEFAULT_POLL_INTERVAL, help="Seconds between progress checks")

    # --- status ---
    status_parser = subparsers.add_parser("status", help="Show a test with its runs")
    status_parser.add_argument("test_id", help="Test id")
    status_parser.add_argument("--full", dest="full", action=TrackingStoreTrueAction, default=False, help="Print raw JSON including Lighthouse reports")

    # --- list ---
    list_parser = subparsers.add_parser("list", help="List tests for a shop, newest first")
    list_parser.add_argument("--shop", dest="shop", action=TrackingAction, default=None, help="Shop domain")

    # --- cancel ---
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a running test")
    cancel_parser.add_argument("test_id", help="Test id")

    # --- delete ---
    delete_parser = subparsers.add_parser("delete", help="Delete a test and its runs")
    delete_parser.add_argument("test_id", help="Test id")

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Write a test's runs to CSV/JSON")
    export_parser.add_argument("test_id", help="Test id")
    export_parser.add_argument("--output-format", dest="output_format", action=TrackingAction, default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Output format: csv, json, or both")
    export_parser.add_argument("-o", "--output", dest="output", action=TrackingAction, default=None, help="Explicit output file path (overrides auto-naming)")
    export_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for auto-named output files")
    export_parser.add_argument("--full", dest="full", action=TrackingStoreTrueAction, default=False, help="Include raw Lighthouse reports in JSON output")

    return parser


# ---------------------------------------------------------------------------
# URL Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a storefront URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url:
        return None

    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

RUN_COLUMNS = ["test_id", "test_type", "run_number", "score", "duration_ms", "test_url", "user_agent", "created_at"]


def runs_dataframe(test: PerformanceTest, include_reports: bool = False) -> pd.DataFrame:
    """One row per persisted run, ordered by phase then run number."""
    rows = [run.to_dict(include_reports) for run in test.results]
    columns = RUN_COLUMNS + (["report"] if include_reports else [])
    return pd.DataFrame(rows, columns=columns)


def phase_summary(test: PerformanceTest) -> pd.DataFrame:
    """Per-phase score statistics over the persisted runs."""
    dataframe = runs_dataframe(test)
    summary_rows = []
    for phase in Phase:
        scores = pd.to_numeric(dataframe.loc[dataframe["test_type"] == phase.value, "score"], errors="coerce").dropna()
        row = {"test_type": phase.value, "runs": len(scores)}
        if len(scores) > 0:
            row["mean"] = scores.mean()
            row["median"] = scores.median()
            row["min"] = scores.min()
            row["max"] = scores.max()
            row["score_range"] = scores.max() - scores.min()
            row["score_stddev"] = round(scores.std(), 1) if len(scores) > 1 else 0.0
        summary_rows.append(row)
    return pd.DataFrame(summary_rows)


def generate_output_path(output_dir: str, test_id: str, extension: str) -> Path:
    """Generate a timestamped output file path."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path / f"{timestamp}-{test_id}.{extension}"


def output_csv(test: PerformanceTest, output_path: Path) -> str:
    """Write a test's runs to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    runs_dataframe(test).to_csv(output_path, index=False)
    return str(output_path)


def output_json(test: PerformanceTest, output_path: Path, include_reports: bool = False) -> str:
    """Write a test and its runs as JSON with a metadata envelope. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    summary = test.to_dict(include_reports)
    results = summary.pop("results")
    phases = phase_summary(test)
    phases = phases.astype(object).where(phases.notna(), None)
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "tool_version": __version__,
            "aggregation": "mean",
            "pass_threshold": PASS_THRESHOLD,
        },
        "test": summary,
        "phases": phases.to_dict(orient="records"),
        "results": results,
    }
    with open(output_path, "w") as fh:
        json.dump(output_data, fh, indent=2, default=str)
    return str(output_path)


def _format_score(value: float | None, signed: bool = False) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "-"
    return f"{value:+.1f}" if signed else f"{value:.1f}"


STATUS_STYLES = {
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


def format_tests_table(tests: list[dict]) -> Table:
    """Table of tests as shown on the shop overview."""
    table = Table(title="Performance tests", show_lines=False)
    table.add_column("ID", overflow="fold")
    table.add_column("App")
    table.add_column("Created")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Baseline", justify="right")
    table.add_column("Post-install", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("Result")

    for test in tests:
        status = test["status"]
        progress = progress_of(test)
        pass_status = test.get("pass_status")
        result_label = "-"
        if pass_status:
            result_label = "[green]PASS[/green]" if pass_status == PassStatus.PASS.value else "[red]FAIL[/red]"
        table.add_row(
            test["id"],
            test.get("app_name") or test.get("app_id", ""),
            str(test.get("created_at", ""))[:19].replace("T", " "),
            f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]",
            f"{progress:.0f}%",
            _format_score(test.get("baseline_score")),
            _format_score(test.get("post_install_score")),
            _format_score(test.get("score_delta"), signed=True),
            result_label,
        )
    return table


def format_test_detail(test: dict) -> Table:
    """Table of a single test's runs with its summary in the caption."""
    table = Table(title=f"{test.get('app_name') or test.get('app_id')} on {test['test_store_url']}")
    table.add_column("Phase")
    table.add_column("Run", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("User agent", overflow="fold")
    for run in test.get("results", []):
        table.add_row(
            run["test_type"],
            str(run["run_number"]),
            _format_score(run["score"]),
            f"{run['duration_ms'] / 1000:.1f}s",
            run["user_agent"],
        )
    table.caption = (
        f"status: {test['status']} | baseline: {_format_score(test.get('baseline_score'))} | "
        f"post-install: {_format_score(test.get('post_install_score'))} | "
        f"delta: {_format_score(test.get('score_delta'), signed=True)} | "
        f"result: {(test.get('pass_status') or 'pending').upper()}"
    )
    return table


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def build_store(args: argparse.Namespace) -> TestStore:
    return SQLTestStore(getattr(args, "database_url", DEFAULT_DATABASE_URL))


def build_auditor(args: argparse.Namespace) -> Auditor:
    max_browsers = getattr(args, "max_browsers", DEFAULT_MAX_BROWSERS) or None
    timeout = getattr(args, "audit_timeout", DEFAULT_AUDIT_TIMEOUT)
    if getattr(args, "auditor", DEFAULT_AUDITOR) == "pagespeed":
        return PageSpeedAuditor(api_key=getattr(args, "api_key", None), timeout=timeout, max_browsers=max_browsers)
    return LighthouseAuditor(
        lighthouse_path=getattr(args, "lighthouse_path", DEFAULT_LIGHTHOUSE_PATH),
        timeout=timeout,
        max_browsers=max_browsers,
    )


def build_installer(args: argparse.Namespace) -> InstallationSimulator | WebhookInstaller:
    webhook_url = getattr(args, "install_webhook", None)
    if webhook_url:
        return WebhookInstaller(webhook_url)
    return InstallationSimulator(getattr(args, "install_delay", DEFAULT_INSTALL_DELAY))


def build_tester(args: argparse.Namespace) -> PerformanceTester:
    """Assemble a PerformanceTester from parsed CLI args."""
    runs = getattr(args, "runs", DEFAULT_RUNS)
    if runs < 1:
        err_console.print("[red]Error:[/red] --runs must be at least 1")
        sys.exit(1)
    return PerformanceTester(
        store=build_store(args),
        auditor=build_auditor(args),
        installer=build_installer(args),
        runs=runs,
        user_agent=getattr(args, "user_agent", DEFAULT_USER_AGENT),
    )


def _require_shop(args: argparse.Namespace) -> str:
    shop = getattr(args, "shop", None)
    if not shop:
        err_console.print("[red]Error:[/red] --shop is required (or set shop in perftest.toml)")
        sys.exit(1)
    return shop


async def _require_test(tester: PerformanceTester, test_id: str, include_reports: bool = False) -> dict:
    test = await tester.get_test(test_id, include_reports)
    if test is None:
        err_console.print(f"[red]Error:[/red] performance test not found: {test_id}")
        sys.exit(1)
    return test


def _exit_code_for(test: dict) -> int:
    if test["status"] != TestStatus.COMPLETED.value:
        return 1
    return FAIL_EXIT_CODE if test.get("pass_status") == PassStatus.FAIL.value else 0


# ---------------------------------------------------------------------------
# Subcommand: audit
# ---------------------------------------------------------------------------


async def cmd_audit(args: argparse.Namespace) -> None:
    """Run one audit and print its score."""
    url = validate_url(args.url)
    if not url:
        err_console.print(f"[red]Error:[/red] invalid URL: {args.url}")
        sys.exit(1)

    auditor = build_auditor(args)
    err_console.print(f"Auditing {url}...")
    try:
        result = await auditor.audit(url, getattr(args, "user_agent", None))
    except AuditFailure as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)

    out_console.print(f"Score:      {result.score:.1f}/100")
    out_console.print(f"Duration:   {result.duration_ms / 1000:.1f}s")
    out_console.print(f"User agent: {result.user_agent}")


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


async def cmd_run(args: argparse.Namespace) -> None:
    """Start a test in the background, poll the store for progress, print the outcome."""
    shop = _require_shop(args)
    test_store_url = validate_url(args.test_store_url)
    if not test_store_url:
        err_console.print(f"[red]Error:[/red] invalid test store URL: {args.test_store_url}")
        sys.exit(1)

    tester = build_tester(args)
    app_name = getattr(args, "app_name", None) or args.app_id
    started = await tester.start_test(shop, args.app_id, app_name, test_store_url)
    test_id = started["test_id"]
    err_console.print(f"Started performance test {test_id} ({tester.runs} runs per phase)")

    poll_interval = getattr(args, "poll_interval", DEFAULT_POLL_INTERVAL)
    last_progress = None
    try:
        while True:
            test = await _require_test(tester, test_id)
            if test["status"] != TestStatus.RUNNING.value:
                break
            progress = progress_of(test)
            if progress != last_progress:
                err_console.print(f"  Progress: {progress:.0f}% ({len(test['results'])}/{test['runs_per_phase'] * len(Phase)} runs)")
                last_progress = progress
            await asyncio.sleep(poll_interval)
    except asyncio.CancelledError:
        await tester.cancel_test(test_id)
        raise

    await tester.join(test_id)
    test = await _require_test(tester, test_id)
    out_console.print(format_test_detail(test))
    sys.exit(_exit_code_for(test))


# ---------------------------------------------------------------------------
# Subcommands: status / list / cancel / delete
# ---------------------------------------------------------------------------


async def cmd_status(args: argparse.Namespace) -> None:
    """Show one test with its runs."""
    tester = build_tester(args)
    full = getattr(args, "full", False)
    test = await _require_test(tester, args.test_id, include_reports=full)
    if full:
        out_console.print_json(json.dumps(test, default=str))
        return
    out_console.print(format_test_detail(test))
    if test["status"] == TestStatus.RUNNING.value:
        err_console.print(f"Progress: {progress_of(test):.0f}%")


async def cmd_list(args: argparse.Namespace) -> None:
    """List a shop's tests, newest first."""
    shop = _require_shop(args)
    tester = build_tester(args)
    tests = await tester.list_tests(shop)
    if not tests:
        err_console.print(f"No performance tests for {shop}")
        return
    out_console.print(format_tests_table(tests))


async def cmd_cancel(args: argparse.Namespace) -> None:
    """Request cancellation of a running test."""
    tester = build_tester(args)
    try:
        cancelled = await tester.cancel_test(args.test_id)
    except TestNotFoundError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    if cancelled:
        err_console.print(f"Performance test {args.test_id} cancelled")
    else:
        err_console.print(f"[yellow]Warning:[/yellow] performance test {args.test_id} already finished")
        sys.exit(1)


async def cmd_delete(args: argparse.Namespace) -> None:
    """Delete a test and all of its runs."""
    store = build_store(args)
    if not await store.delete_test(args.test_id):
        err_console.print(f"[red]Error:[/red] performance test not found: {args.test_id}")
        sys.exit(1)
    err_console.print(f"Deleted performance test {args.test_id}")


# ---------------------------------------------------------------------------
# Subcommand: export
# ---------------------------------------------------------------------------


async def cmd_export(args: argparse.Namespace) -> None:
    """Write a test's runs to CSV and/or JSON."""
    store = build_store(args)
    test = await store.get_test(args.test_id)
    if test is None:
        err_console.print(f"[red]Error:[/red] performance test not found: {args.test_id}")
        sys.exit(1)

    output_format = getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT)
    output_dir = getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)
    explicit_output = getattr(args, "output", None)

    written_files: list[str] = []
    if output_format in ("csv", "both"):
        csv_path = Path(explicit_output).with_suffix(".csv") if explicit_output else generate_output_path(output_dir, test.id, "csv")
        written_files.append(output_csv(test, csv_path))
    if output_format in ("json", "both"):
        json_path = Path(explicit_output).with_suffix(".json") if explicit_output else generate_output_path(output_dir, test.id, "json")
        written_files.append(output_json(test, json_path, include_reports=getattr(args, "full", False)))

    err_console.print("\nResults written to:")
    for filepath in written_files:
        err_console.print(f"  {filepath}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)
    args = apply_profile(args, config, getattr(args, "profile", None))
    configure_logging(getattr(args, "verbose", False))

    commands = {
        "audit": cmd_audit,
        "run": cmd_run,
        "status": cmd_status,
        "list": cmd_list,
        "cancel": cmd_cancel,
        "delete": cmd_delete,
        "export": cmd_export,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    try:
        asyncio.run(handler(args))
    except PersistenceFailure as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
