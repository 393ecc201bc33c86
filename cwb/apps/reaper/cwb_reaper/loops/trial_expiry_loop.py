"""Trial Expiry Loop.

Periodically runs the trial-expiry sweep against the subscription store.

- Scan: status='trialing' AND price_ref='trial' AND current_period_end < NOW()
- Per row: trialing → expired, one "trial_ended" notification queued
- Interval: CWB_TRIAL_SWEEP_INTERVAL_SECONDS (default: 3600)

The HTTP cron endpoint runs the same sweep; running both is safe because a
row already expired is never selected again.
"""

import logging
import signal
import threading
import time
from typing import Optional

from cwb_api.billing.trial_sweep import run_trial_sweep
from cwb_api.config.env import get_trial_sweep_interval_seconds

logger = logging.getLogger(__name__)

# Global shutdown flag
_shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
    _shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers. Main thread only."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def trial_expiry_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    stop_after_one_iteration: bool = False,
) -> None:
    """Trial expiry loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval in seconds (default: from env CWB_TRIAL_SWEEP_INTERVAL_SECONDS)
        stop_after_one_iteration: For testing only - exit after one sweep
    """
    if interval_seconds is None:
        interval_seconds = get_trial_sweep_interval_seconds()

    logger.info(f"Trial expiry loop started (interval={interval_seconds}s)")

    iteration = 0
    total_expired = 0

    while not _shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            with session_factory() as session:
                result = run_trial_sweep(session)

            total_expired += result.expired
            if result.found:
                logger.info(
                    f"Trial expiry iteration {iteration}: {result.message}",
                    extra={
                        "iteration": iteration,
                        "found": result.found,
                        "expired": result.expired,
                        "notified": result.emails_sent,
                        "errors": result.errors,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                        "total_expired": total_expired,
                    },
                )
            else:
                logger.debug("No expired trials found")

        except Exception as e:
            logger.error(f"Trial expiry loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            logger.info("Trial expiry loop stopping after one iteration (test mode)")
            break

        # Interruptible sleep - allows immediate shutdown on signal
        _shutdown_event.wait(interval_seconds)

    logger.info(
        f"Trial expiry loop shutdown complete: {iteration} iterations, {total_expired} expired"
    )
