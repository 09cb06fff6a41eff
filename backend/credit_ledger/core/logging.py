"""Root logging setup and the ledger's named loggers"""
import logging

from credit_ledger.core.config import settings

QUIET_LIBRARIES = ("urllib3", "httpx", "opentelemetry")


def setup_logging():
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


ledger_logger = logging.getLogger("ledger")
compensation_logger = logging.getLogger("compensation")
settlement_logger = logging.getLogger("settlement")
security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")
