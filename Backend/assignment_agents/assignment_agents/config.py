# assignment_agents/config.py
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError

log = logging.getLogger(__name__)

_here = Path(__file__).resolve()
# Prefer repo-root .env, then allow Backend/.env overrides if present.
load_dotenv(dotenv_path=_here.parents[3] / ".env")
load_dotenv(dotenv_path=_here.parents[2] / ".env")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v


def _int_env(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        return int(str(v).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {v!r}")


def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    s = str(v).strip().lower()
    return s in ("1", "true", "yes", "y", "on")


def _int_list_env(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    """
    "12,20,23" -> (12, 20, 23)
    Also tolerates "[12, 20, 23]" and ";" separators.
    """
    v = _env(name)
    if v is None:
        return tuple(default)
    s = str(v).strip().strip("[]").replace(";", ",")
    out: List[int] = []
    for part in s.split(","):
        p = part.strip()
        if not p:
            continue
        try:
            out.append(int(p))
        except ValueError:
            raise ConfigError(f"{name} must be a list of integers, got {v!r}")
    return tuple(out)


DB_HOST = _env("DB_HOST", "127.0.0.1")
DB_PORT = _int_env("DB_PORT", 3306)
DB_USER = _env("DB_USER", "root")
DB_PASSWORD = _env("DB_PASSWORD", "") or ""
DB_NAME = _env("DB_NAME", "case_assignment")

WORKER_ID = _env("WORKER_ID", "worker-1")
POLL_MS = _int_env("POLL_MS", 1000)

JWT_SECRET = _env("JWT_SECRET", "") or ""

DEFAULT_REMINDER_HOURS = (12, 20, 23)


@dataclass(frozen=True)
class SchedulerConfig:
    """
    Immutable snapshot of the case assignment scheduler settings.

    Loaded once at startup. Hot reload swaps the whole object through
    replace_config(); fields are never mutated in place.
    """

    scheduler_enabled: bool = True
    reminder_enabled: bool = True
    cleanup_enabled: bool = True

    check_interval_seconds: int = 300
    assignment_timeout_hours: int = 24
    critical_assignment_timeout_hours: int = 4

    can_reassign_to_same_doctor: bool = False
    reminder_hours_from_assignment: Tuple[int, ...] = DEFAULT_REMINDER_HOURS
    notify_admin_on_expiration: bool = True
    max_reassignment_attempts: int = 3
    reassignment_cooldown_hours: int = 24
    expiration_grace_period_minutes: int = 5

    reminder_retention_days: int = 30
    collaborator_timeout_seconds: int = 10
    candidate_limit: int = 5

    emergency_mode_auto_disable: bool = True
    emergency_mode_max_hours: int = 12

    def __post_init__(self) -> None:
        _validate(self)
        object.__setattr__(
            self,
            "reminder_hours_from_assignment",
            _filter_reminder_hours(self.reminder_hours_from_assignment, self.assignment_timeout_hours),
        )

    def reminder_hours_for(self, timeout_hours: int) -> Tuple[int, ...]:
        """Checkpoints that fall strictly inside the given acceptance window."""
        return tuple(h for h in self.reminder_hours_from_assignment if h < timeout_hours)

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["reminder_hours_from_assignment"] = list(self.reminder_hours_from_assignment)
        return d


def _validate(cfg: SchedulerConfig) -> None:
    positives = {
        "check_interval_seconds": cfg.check_interval_seconds,
        "assignment_timeout_hours": cfg.assignment_timeout_hours,
        "critical_assignment_timeout_hours": cfg.critical_assignment_timeout_hours,
        "max_reassignment_attempts": cfg.max_reassignment_attempts,
        "reminder_retention_days": cfg.reminder_retention_days,
        "collaborator_timeout_seconds": cfg.collaborator_timeout_seconds,
        "candidate_limit": cfg.candidate_limit,
        "emergency_mode_max_hours": cfg.emergency_mode_max_hours,
    }
    for name, value in positives.items():
        if int(value) <= 0:
            raise ConfigError(f"{name} must be > 0, got {value}")

    if cfg.reassignment_cooldown_hours < 0:
        raise ConfigError(f"reassignment_cooldown_hours must be >= 0, got {cfg.reassignment_cooldown_hours}")
    if cfg.expiration_grace_period_minutes < 0:
        raise ConfigError(
            f"expiration_grace_period_minutes must be >= 0, got {cfg.expiration_grace_period_minutes}"
        )
    if cfg.critical_assignment_timeout_hours > cfg.assignment_timeout_hours:
        raise ConfigError(
            "critical_assignment_timeout_hours "
            f"({cfg.critical_assignment_timeout_hours}) exceeds assignment_timeout_hours "
            f"({cfg.assignment_timeout_hours})"
        )


def _filter_reminder_hours(hours, timeout_hours: int) -> Tuple[int, ...]:
    kept = sorted({int(h) for h in hours if 0 < int(h) < timeout_hours})
    dropped = sorted({int(h) for h in hours} - set(kept))
    if dropped:
        log.warning(
            "Dropping reminder checkpoints %s: each must be > 0 and < %sh timeout",
            dropped,
            timeout_hours,
        )
    return tuple(kept)


def load_scheduler_config(prefix: str = "CASE_ASSIGNMENT_") -> SchedulerConfig:
    """Build a SchedulerConfig from the environment. Raises ConfigError on bad values."""
    d = SchedulerConfig.__dataclass_fields__

    def i(name: str) -> int:
        return _int_env(prefix + name.upper(), d[name].default)

    def b(name: str) -> bool:
        return _bool_env(prefix + name.upper(), d[name].default)

    return SchedulerConfig(
        scheduler_enabled=b("scheduler_enabled"),
        reminder_enabled=b("reminder_enabled"),
        cleanup_enabled=b("cleanup_enabled"),
        check_interval_seconds=i("check_interval_seconds"),
        assignment_timeout_hours=i("assignment_timeout_hours"),
        critical_assignment_timeout_hours=i("critical_assignment_timeout_hours"),
        can_reassign_to_same_doctor=b("can_reassign_to_same_doctor"),
        reminder_hours_from_assignment=_int_list_env(
            prefix + "REMINDER_HOURS_FROM_ASSIGNMENT", DEFAULT_REMINDER_HOURS
        ),
        notify_admin_on_expiration=b("notify_admin_on_expiration"),
        max_reassignment_attempts=i("max_reassignment_attempts"),
        reassignment_cooldown_hours=i("reassignment_cooldown_hours"),
        expiration_grace_period_minutes=i("expiration_grace_period_minutes"),
        reminder_retention_days=i("reminder_retention_days"),
        collaborator_timeout_seconds=i("collaborator_timeout_seconds"),
        candidate_limit=i("candidate_limit"),
        emergency_mode_auto_disable=b("emergency_mode_auto_disable"),
        emergency_mode_max_hours=i("emergency_mode_max_hours"),
    )


_config_lock = threading.Lock()
_current: Optional[SchedulerConfig] = None


def get_config() -> SchedulerConfig:
    global _current
    with _config_lock:
        if _current is None:
            _current = load_scheduler_config()
        return _current


def replace_config(new_config: SchedulerConfig) -> SchedulerConfig:
    """Swap the process-wide snapshot; readers holding the old one keep a consistent view."""
    global _current
    with _config_lock:
        old = _current
        _current = new_config
    log.info("Scheduler config replaced (old=%s)", "none" if old is None else "snapshot")
    return new_config


def with_overrides(cfg: SchedulerConfig, **changes: Any) -> SchedulerConfig:
    return replace(cfg, **changes)
