from .credentials import CREDENTIAL_PATTERNS, NOISE_PATTERNS, detect_credential
from .sleep_cycle import SleepCycleOptions, SleepCycleResult, run_sleep_cycle
from .task_ledger import review_and_archive_stale_tasks

__all__ = [
    "CREDENTIAL_PATTERNS",
    "NOISE_PATTERNS",
    "SleepCycleOptions",
    "SleepCycleResult",
    "detect_credential",
    "review_and_archive_stale_tasks",
    "run_sleep_cycle",
]
