import logging
import signal
import threading

from .logging_utils import setup_logging
from .runtime import build_runtime
from .settings import settings

log = logging.getLogger("worker")

_stop = threading.Event()

def setup_signal_handlers():
    def _handler(signum, frame):
        log.info(f"received signal {signum}, stopping", extra={"event": "worker_signal"})
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)

def main():
    setup_logging(settings.log_level)
    runtime = build_runtime(settings, role="worker")
    setup_signal_handlers()

    runtime.start()
    log.info("worker started", extra={"event": "worker_start"})
    try:
        while not _stop.wait(1):
            pass
    finally:
        runtime.stop()
        log.info("worker stopped", extra={"event": "worker_stop"})

if __name__ == "__main__":
    main()
