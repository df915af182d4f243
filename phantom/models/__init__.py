from phantom.models.merchant import Merchant  # noqa: F401
from phantom.models.ghost_target import GhostTarget, PiiRecord  # noqa: F401
from phantom.models.scan_job import ScanJob  # noqa: F401
from phantom.models.cron_lock import CronLock  # noqa: F401
from phantom.models.system_log import SystemLog  # noqa: F401
from phantom.models.liquidity_oracle import LiquidityOracleEntry  # noqa: F401
