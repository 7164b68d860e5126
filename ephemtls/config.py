from dataclasses import dataclass
from datetime import timedelta
import os
from dotenv import load_dotenv

from .tls import BackdatePolicy

@dataclass
class Config:
    listen_host: str
    listen_port: int
    host_name: str
    key_size: int
    backdate_min_periods: int
    backdate_max_periods: int
    backdate_period_days: int
    cert_dir: str
    log_path: str

    def backdate_policy(self) -> BackdatePolicy:
        return BackdatePolicy(
            min_periods=self.backdate_min_periods,
            max_periods=self.backdate_max_periods,
            period=timedelta(days=self.backdate_period_days),
        )

def load_config():
    load_dotenv(override=True)
    return Config(
        listen_host=os.getenv("EPHEMTLS_LISTEN_HOST", "0.0.0.0"),
        listen_port=int(os.getenv("EPHEMTLS_LISTEN_PORT", 8443)),
        host_name=os.getenv("EPHEMTLS_HOST_NAME", ""),
        key_size=int(os.getenv("EPHEMTLS_KEY_SIZE", 2048)),
        backdate_min_periods=int(os.getenv("EPHEMTLS_BACKDATE_MIN_PERIODS", 1)),
        backdate_max_periods=int(os.getenv("EPHEMTLS_BACKDATE_MAX_PERIODS", 12)),
        backdate_period_days=int(os.getenv("EPHEMTLS_BACKDATE_PERIOD_DAYS", 30)),
        cert_dir=os.getenv("EPHEMTLS_CERT_DIR", ""),
        log_path=os.getenv("EPHEMTLS_LOG_PATH", "server.log"),
    )
