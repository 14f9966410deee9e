import os
import signal
import time

from escrowcourt import create_app
from escrowcourt.jobs.scheduler import start_scheduler

app = create_app()

if __name__ == "__main__":
    if not app.config.get("SCHEDULER_ENABLED"):
        app.logger.warning("SCHEDULER_ENABLED is off; set it to run the background jobs")
        raise SystemExit(0)

    scheduler = start_scheduler(app)
    running = True

    def _stop(signum, frame):
        global running
        running = False

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    tick = float(os.getenv("SCHEDULER_IDLE_SECONDS", "1"))
    while running:
        time.sleep(tick)

    scheduler.shutdown(wait=True)
    app.logger.info("scheduler stopped")
