"""
Result records returned by lifecycle jobs.

Jobs never raise past their boundary: every per-unit failure is captured
as an error string, and the first one is kept with enough structure
(message, code, details, league) for an operator to act on.
"""
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from app.services.lifecycle.exceptions import LifecycleError


@dataclass
class FirstError:
    message: str
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    league: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, league: Optional[str] = None, **details) -> "FirstError":
        if isinstance(exc, LifecycleError):
            return cls(message=exc.message, code=exc.code, details={**exc.details, **details}, league=league)
        return cls(message=str(exc) or type(exc).__name__, code=type(exc).__name__, details=details, league=league)


@dataclass
class JobResult:
    """Outcome of one job for one league."""

    league: str
    fetched: int = 0
    upserted: int = 0
    finalized: int = 0
    enqueued: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    first_error: Optional[FirstError] = None
    stats: Dict[str, int] = field(default_factory=dict)
    # Set when the job stopped at a cap with work left; resume_from names the next date
    has_more: bool = False
    resume_from: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def record_error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        **details,
    ) -> None:
        """Append an error string; the first one also becomes ``first_error``."""
        self.errors.append(message)
        if self.first_error is None:
            if exc is not None:
                self.first_error = FirstError.from_exception(exc, league=self.league, **details)
                self.first_error.message = message
            else:
                self.first_error = FirstError(message=message, details=details, league=self.league)

    def bump(self, stat: str, amount: int = 1) -> None:
        self.stats[stat] = self.stats.get(stat, 0) + amount

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


@dataclass
class MultiLeagueJobResult:
    """Aggregate over the leagues a job ran for."""

    job: str
    results: List[JobResult] = field(default_factory=list)
    duration_ms: int = 0
    has_more: bool = False

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    def _total(self, name: str) -> int:
        return sum(getattr(r, name) for r in self.results)

    @property
    def total_fetched(self) -> int:
        return self._total("fetched")

    @property
    def total_upserted(self) -> int:
        return self._total("upserted")

    @property
    def total_finalized(self) -> int:
        return self._total("finalized")

    @property
    def total_enqueued(self) -> int:
        return self._total("enqueued")

    @property
    def errors(self) -> List[str]:
        return [f"[{r.league}] {e}" for r in self.results for e in r.errors]

    @property
    def first_error(self) -> Optional[FirstError]:
        return next((r.first_error for r in self.results if r.first_error), None)

    def resume_points(self) -> Dict[str, str]:
        return {r.league: r.resume_from for r in self.results if r.resume_from}

    def stats(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for result in self.results:
            for key, value in result.stats.items():
                totals[key] = totals.get(key, 0) + value
        return totals

    def to_dict(self) -> Dict[str, Any]:
        first_error = self.first_error
        return {
            "job": self.job,
            "success": self.success,
            "total_fetched": self.total_fetched,
            "total_upserted": self.total_upserted,
            "total_finalized": self.total_finalized,
            "total_enqueued": self.total_enqueued,
            "duration_ms": self.duration_ms,
            "has_more": self.has_more,
            "resume_from": self.resume_points(),
            "first_error": asdict(first_error) if first_error else None,
            "stats": self.stats(),
            "leagues": [r.to_dict() for r in self.results],
        }


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - started) * 1000)
