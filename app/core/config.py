import os
from decimal import Decimal
from dotenv import load_dotenv
load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        self.APP_NAME = os.getenv("APP_NAME", "order-escrow-api")
        self.APP_ENV = os.getenv("APP_ENV", "dev")
        self.APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
        self.TZ = os.getenv("TZ", "UTC")

        self.DATABASE_URL = os.getenv("DATABASE_URL") or (
            f"mysql+aiomysql://{os.getenv('MYSQL_USER','root')}:{os.getenv('MYSQL_PASSWORD','123456')}"
            f"@{os.getenv('MYSQL_HOST','127.0.0.1')}:{os.getenv('MYSQL_PORT','3306')}/{os.getenv('MYSQL_DB','escrow')}?charset=utf8mb4"
        )
        # empty = driver default (REPEATABLE READ on MySQL)
        self.DB_ISOLATION_LEVEL = os.getenv("DB_ISOLATION_LEVEL", "")
        self.DB_ECHO = _bool("DB_ECHO", "0")

        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
        self.JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "43200"))

        self.DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

        # financial limits
        self.ORDER_MIN_VALUE = Decimal(os.getenv("ORDER_MIN_VALUE", "0.01"))
        self.ORDER_MAX_VALUE = Decimal(os.getenv("ORDER_MAX_VALUE", "100000"))
        self.DEPOSIT_MIN = Decimal(os.getenv("DEPOSIT_MIN", "0"))
        self.DEPOSIT_MAX = Decimal(os.getenv("DEPOSIT_MAX", "100000"))
        self.WALLET_MAX_BALANCE = Decimal(os.getenv("WALLET_MAX_BALANCE", "1000000"))

        # payout split, fractions of order value
        self.WORKER_SHARE = Decimal(os.getenv("WORKER_SHARE", "0.80"))
        self.SUPPORT_SHARE = Decimal(os.getenv("SUPPORT_SHARE", "0.05"))
        self.SYSTEM_SHARE = Decimal(os.getenv("SYSTEM_SHARE", "0.15"))
        total = self.WORKER_SHARE + self.SUPPORT_SHARE + self.SYSTEM_SHARE
        if total != 1:
            raise ValueError(f"Payout shares must sum to 1, got {total}")

        # transactional retry
        self.TX_MAX_ATTEMPTS = int(os.getenv("TX_MAX_ATTEMPTS", "3"))
        self.TX_BACKOFF_BASE_MS = int(os.getenv("TX_BACKOFF_BASE_MS", "100"))
        self.TX_BACKOFF_MAX_MS = int(os.getenv("TX_BACKOFF_MAX_MS", "1000"))

        # claiming a job starts the work right away
        self.AUTO_START_ON_CLAIM = _bool("AUTO_START_ON_CLAIM", "1")

        self.SCHEDULER_ENABLED = _bool("SCHEDULER_ENABLED", "1")
        self.PAYOUT_SWEEP_SECONDS = int(os.getenv("PAYOUT_SWEEP_SECONDS", "30"))
        self.INTEGRITY_CHECK_SECONDS = int(os.getenv("INTEGRITY_CHECK_SECONDS", "300"))

    @property
    def payout_shares(self):
        return (self.WORKER_SHARE, self.SUPPORT_SHARE, self.SYSTEM_SHARE)


settings = Settings()
