"""Load recurring loyalty job definitions from TOML."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib
from loguru import logger


@dataclass(slots=True)
class JobDefinition:
    """One scheduled task with its retry policy."""

    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    def backoff_for(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` failed, jitter excluded."""

        delay = self.base_backoff_seconds * (self.backoff_multiplier ** max(attempt - 1, 0))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        return max(delay, 0.0)


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def _number(payload: Mapping[str, Any], key: str, default: float, *, floor: float) -> float:
    try:
        value = float(payload.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(value, floor)


def _parse_job(key: str, payload: Mapping[str, Any]) -> JobDefinition | None:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not isinstance(cron, str):
        logger.warning("Skipping malformed job definition", job_id=key)
        return None

    kwargs = payload.get("kwargs", {})
    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task,
        cron=cron,
        kwargs=dict(kwargs) if isinstance(kwargs, Mapping) else {},
        enabled=bool(payload.get("enabled", True)),
        max_attempts=int(_number(payload, "max_attempts", 1, floor=1)),
        base_backoff_seconds=_number(payload, "base_backoff_seconds", 5.0, floor=0.0),
        backoff_multiplier=_number(payload, "backoff_multiplier", 2.0, floor=1.0),
        max_backoff_seconds=_number(payload, "max_backoff_seconds", 60.0, floor=0.0),
        jitter_seconds=_number(payload, "jitter_seconds", 1.0, floor=0.0),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``[jobs.<id>]`` tables; disabled and malformed entries are dropped."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    jobs: list[JobDefinition] = []
    for key, payload in (data.get("jobs") or {}).items():
        if not isinstance(payload, Mapping):
            continue
        job = _parse_job(key, payload)
        if job is not None and job.enabled:
            jobs.append(job)

    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
