"""Run the maintenance scheduler as a standalone process."""

import logging
import time

from app.services.audit_service import audit_service
from app.services.maintenance import build_scheduler


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    scheduler = build_scheduler()
    audit_service.start()
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.stop()
        audit_service.stop()


if __name__ == "__main__":
    main()
