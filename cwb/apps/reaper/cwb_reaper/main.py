"""CWB Reaper main entry point.

Runs the trial-expiry loop as a long-lived process for deployments without
an external scheduler hitting /internal/cron/expire-trials.
"""

import logging
import os
import threading

from cwb_api.config.env import get_database_url, get_trial_sweep_interval_seconds
from cwb_api.db.engine import build_engine, build_sessionmaker
from cwb_api.utils import configure_json_logging
from cwb_reaper.loops.trial_expiry_loop import install_signal_handlers, trial_expiry_loop

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for reaper."""
    # Fail-fast in production when DATABASE_URL is missing
    database_url = get_database_url()
    interval_seconds = get_trial_sweep_interval_seconds()

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    install_signal_handlers()

    logger.info(f"Starting CWB Reaper: trial expiry interval={interval_seconds}s")

    trial_thread = threading.Thread(
        target=trial_expiry_loop,
        kwargs={
            "session_factory": SessionLocal,
            "interval_seconds": interval_seconds,
        },
        name="TrialExpiryLoop",
        daemon=False,
    )

    try:
        trial_thread.start()
        trial_thread.join()
    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")
    finally:
        engine.dispose()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
