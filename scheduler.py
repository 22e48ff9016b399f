# Nyaya Scheduler: logging setup and the periodic proposal sweep.
# The sweep re-reads "active AND expires_at <= now" on every run; nothing
# about the candidate set is cached between runs.

import logging
import os
import threading

from proposals import get_proposal_lifecycle

LOG_FILE = os.environ.get(
    "NYAYA_LOG_FILE", os.path.join(os.path.dirname(__file__), "nyaya.log")
)
SWEEP_INTERVAL_SEC = int(os.environ.get("NYAYA_SWEEP_INTERVAL_SEC", "3600"))


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the "nyaya" logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("nyaya")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = setup_logging()


# ── Proposal sweep ────────────────────────────────────────────────────


def run_sweep(now=None):
    """One sweep pass. Returns the SweepResult."""
    result = get_proposal_lifecycle().sweep_expired(now=now)
    if not result.ok:
        log.warning("SWEEP partial: %d closed, %d failed: %s",
                    result.count, len(result.failed),
                    ", ".join(f["id"] for f in result.failed))
    return result


def sweep_loop(interval=SWEEP_INTERVAL_SEC, callback=None, stop_event=None):
    """
    Close expired proposals every `interval` seconds until stop_event is set.
    A failed pass is logged and retried on the next tick.
    """
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        try:
            result = run_sweep()
            if callback:
                callback(result)
        except Exception as e:
            log.error("SWEEP pass failed, retrying in %ds: %s", interval, e)
        stop_event.wait(interval)


def start_sweep_monitor(interval=SWEEP_INTERVAL_SEC, callback=None, stop_event=None):
    """Start the sweep loop in a background thread."""
    t = threading.Thread(
        target=sweep_loop,
        kwargs={"interval": interval, "callback": callback, "stop_event": stop_event},
        daemon=True,
        name="proposal-sweep",
    )
    t.start()
    log.info("SWEEP monitor started (interval=%ds)", interval)
    return t