"""Scheduler: pick due tests and drive one evaluation pass."""

from __future__ import annotations

import logging
import re
import threading
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

from abjudge.config.settings import settings
from abjudge.errors import (
    AbTestNotFound,
    InvalidTestState,
    LeaseConflict,
    PassCancelled,
    StoreUnavailable,
)
from abjudge.models.domain import AbTestStatus, EvaluationOutcome, EvaluationResult
from abjudge.repos.ab_test_repo import AbTestStore
from abjudge.services.evaluation_engine import EvaluationEngine

logger = logging.getLogger(__name__)

_DELAY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([^\W\d_]+)")

_DELAY_MINUTES = {
    "m": 1,
    "min": 1,
    "mins": 1,
    "minute": 1,
    "minutes": 1,
    "h": 60,
    "hr": 60,
    "hrs": 60,
    "hour": 60,
    "hours": 60,
    "d": 24 * 60,
    "day": 24 * 60,
    "days": 24 * 60,
    # Vietnamese spellings used by existing campaign configs
    "phút": 1,
    "giờ": 60,
    "ngày": 24 * 60,
}


def parse_check_delay(text: str | None) -> timedelta:
    """
    "5 minutes" -> 5m, "1.5 hours" -> 90m, "1 day" or "1 ngày" -> 1440m.

    The first number followed by a unit anywhere in the text counts, so
    "after 5 phút" works. Empty or unrecognised text means no delay.
    """
    if not text:
        return timedelta(0)
    match = _DELAY_RE.search(unicodedata.normalize("NFC", text))
    if not match:
        return timedelta(0)
    minutes_per_unit = _DELAY_MINUTES.get(match.group(2).lower())
    if minutes_per_unit is None:
        return timedelta(0)
    return timedelta(minutes=float(match.group(1)) * minutes_per_unit)


def select_due_tests(
    store: AbTestStore,
    now: datetime,
    check_delay: timedelta = timedelta(0),
    limit: int | None = None,
) -> list[str]:
    """
    running AND NOT checked AND scheduled_at <= now - check_delay.

    `now` is the caller's reference clock, so one pass judges every test
    against the same instant.
    """
    return store.select_due(now - check_delay, limit=limit)


class Scheduler:
    """
    One externally triggered pass: select due tests, evaluate each under its lease.

    Distinct tests may be evaluated concurrently; a test whose lease is held
    elsewhere is skipped and stays eligible for the next pass.
    """

    def __init__(
        self,
        store: AbTestStore,
        engine: EvaluationEngine,
        check_delay: timedelta | None = None,
        max_tests: int | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.check_delay = check_delay if check_delay is not None else parse_check_delay(settings.check_delay)
        self.max_tests = max_tests if max_tests is not None else settings.pass_max_tests
        self.max_workers = max_workers if max_workers is not None else settings.pass_max_workers

    def select_due_tests(self, now: datetime) -> list[str]:
        return select_due_tests(self.store, now, self.check_delay, self.max_tests)

    def run_pass(self, now: datetime, cancel: threading.Event | None = None) -> list[EvaluationResult]:
        """
        Evaluate every due test once.

        Returns one result per leased test (plus per-test store/unexpected
        errors). Lease conflicts and non-evaluable tests are skipped.
        """
        test_ids = self.select_due_tests(now)
        logger.info("pass at %s: %d due test(s)", now.isoformat(), len(test_ids))
        if not test_ids:
            return []

        if self.max_workers <= 1 or len(test_ids) == 1:
            outcomes = [self._run_one(test_id, cancel) for test_id in test_ids]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ab-pass") as pool:
                futures = [pool.submit(self._run_one, test_id, cancel) for test_id in test_ids]
                outcomes = [f.result() for f in futures]

        results = [r for r in outcomes if r is not None]
        logger.info(
            "pass at %s done: %d result(s), %d completed",
            now.isoformat(),
            len(results),
            sum(1 for r in results if r.status == AbTestStatus.COMPLETED),
        )
        return results

    def _run_one(self, test_id: str, cancel: threading.Event | None) -> EvaluationResult | None:
        if cancel is not None and cancel.is_set():
            return None
        try:
            return self.engine.evaluate(test_id, cancel=cancel)
        except LeaseConflict:
            logger.debug("test %s leased elsewhere; skipped", test_id)
            return None
        except (InvalidTestState, AbTestNotFound) as e:
            logger.warning("test %s skipped: %s", test_id, e)
            return None
        except PassCancelled as e:
            return self._failed(test_id, EvaluationOutcome.CANCELLED, str(e))
        except StoreUnavailable as e:
            logger.error("store unavailable while evaluating test %s: %s", test_id, e)
            return self._failed(test_id, EvaluationOutcome.STORE_ERROR, str(e))
        except Exception as e:
            logger.exception("unexpected error while evaluating test %s", test_id)
            return self._failed(test_id, EvaluationOutcome.ERROR, f"{type(e).__name__}: {e}")

    @staticmethod
    def _failed(test_id: str, outcome: EvaluationOutcome, error: str) -> EvaluationResult:
        # Writes for a test are atomic, so a failed evaluation left it running.
        return EvaluationResult(
            test_id=test_id,
            project_id=None,
            outcome=outcome,
            status=AbTestStatus.RUNNING,
            error=error,
        )
