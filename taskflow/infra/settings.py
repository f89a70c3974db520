from __future__ import annotations

import os

from taskflow.infra.logging_setup import get_logger

DEFAULT_DEPARTMENTS = "com,dev,seo,reseaux_sociaux,comptabilite,direction,rh"
DEFAULT_OVERDUE_CRITICAL_THRESHOLD = 3
MIN_OVERDUE_CRITICAL_THRESHOLD = 2

logger = get_logger(__name__)


def known_departments() -> frozenset[str]:
    raw = os.getenv("TASKFLOW_DEPARTMENTS", DEFAULT_DEPARTMENTS)
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def transition_policy_name() -> str:
    return os.getenv("TASK_TRANSITION_POLICY", "permissive").strip().lower()


def sequencer_backend() -> str:
    return os.getenv("SEQUENCER_BACKEND", "db").strip().lower()


def overdue_critical_threshold() -> int:
    raw = os.getenv("OVERDUE_CRITICAL_THRESHOLD", str(DEFAULT_OVERDUE_CRITICAL_THRESHOLD)).strip()
    try:
        value = int(raw)
    except ValueError:
        logger.warning(
            "OVERDUE_CRITICAL_THRESHOLD=%r is not an integer; using %d",
            raw,
            DEFAULT_OVERDUE_CRITICAL_THRESHOLD,
        )
        return DEFAULT_OVERDUE_CRITICAL_THRESHOLD
    if value < MIN_OVERDUE_CRITICAL_THRESHOLD:
        logger.warning(
            "OVERDUE_CRITICAL_THRESHOLD=%d is below %d; using %d",
            value,
            MIN_OVERDUE_CRITICAL_THRESHOLD,
            MIN_OVERDUE_CRITICAL_THRESHOLD,
        )
        return MIN_OVERDUE_CRITICAL_THRESHOLD
    return value
