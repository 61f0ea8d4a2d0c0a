"""
Run one pass of the subscription sweep and print the report.

Run: python -m scripts.run_subscription_sweep
"""
import json
import logging
import sys

from resumekit.core.config import LOG_LEVEL
from resumekit.core.logging_config import setup_logging
from resumekit.db.session import SessionLocal
from resumekit.services.change_scheduler import ChangeScheduler
from resumekit.services.payment_gateway import StripePaymentGateway

logger = logging.getLogger(__name__)


def main() -> int:
    setup_logging(LOG_LEVEL)
    report = ChangeScheduler(SessionLocal, StripePaymentGateway()).run_sweep()
    print(json.dumps(report.as_dict(), indent=2))
    if report.skipped:
        logger.warning(f"{report.skipped} subscription(s) skipped; see log for details")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
