# config.py
"""
Runtime configuration for the rebate engine.

Settings are read once from the environment (a local .env file is honoured)
into frozen dataclasses. Engine components never read the environment
themselves: they receive a Settings instance when they are constructed.
"""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from urllib.parse import quote_plus

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _parse_bool(value: Optional[str], default: bool) -> bool:
     if value is None:
          return default
     return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(value: Optional[str], default: str = "") -> list[str]:
     raw = value if value is not None else default
     return [item.strip() for item in raw.split(",") if item.strip()]


def _database_url() -> str:
     """
     DATABASE_URL wins. Otherwise build an MS SQL Server URL from the DB_* variables
     (same variables the deployment already uses), falling back to a local sqlite file.
     """
     explicit = os.getenv("DATABASE_URL")
     if explicit:
          return explicit
     server = os.getenv("DB_SERVER")
     if not server:
          return "sqlite:///./rebates.db"
     user = quote_plus(os.getenv("DB_USER") or "")
     password = quote_plus(os.getenv("DB_PASS") or "")
     port = os.getenv("DB_PORT", "1433")
     name = os.getenv("DB_NAME")
     return f"mssql+pymssql://{user}:{password}@{server}:{port}/{name}"


@dataclass(frozen=True)
class RateLimitPolicy:
     """A fixed-window ceiling for one metric. Policies never share buckets."""
     metric: str
     ceiling: int
     window: timedelta
     enabled: bool = True

     def bucket_key(self, subject: str) -> str:
          return f"{self.metric}:{subject}"


@dataclass(frozen=True)
class Settings:
     database_url: str = "sqlite:///./rebates.db"
     sql_echo: bool = False
     log_level: str = "INFO"
     cors_origins: list[str] = field(default_factory=list)

     # Fraud prevention
     scan_rate_limit: RateLimitPolicy = RateLimitPolicy("scan", 3, timedelta(hours=24))
     payout_rate_limit: RateLimitPolicy = RateLimitPolicy("payout", 1, timedelta(days=30))
     session_prefix: str = "kh"
     session_validity: timedelta = timedelta(hours=24)
     allowed_image_types: frozenset = frozenset({"image/jpeg", "image/jpg", "image/png", "image/webp"})
     min_image_bytes: int = 100 * 1024
     max_image_bytes: int = 10 * 1024 * 1024

     # Review
     auto_approval_enabled: bool = True
     auto_approval_threshold: float = 0.80
     auto_approval_daily_limit: RateLimitPolicy = RateLimitPolicy("auto_approval", 1000, timedelta(days=1))

     # Rebate
     rebate_amount: Decimal = Decimal("5.00")
     test_payout_amount: Optional[Decimal] = None
     payout_currency: str = "USD"

     # Payout rail (PayPal Payouts)
     paypal_client_id: Optional[str] = None
     paypal_client_secret: Optional[str] = None
     paypal_environment: str = "sandbox"
     paypal_webhook_id: Optional[str] = None
     payout_http_timeout: float = 30.0
     token_refresh_margin: timedelta = timedelta(seconds=60)

     # Classifier boundary
     classifier_mode: str = "vision"
     google_vision_api_key: Optional[str] = None
     classifier_timeout: float = 20.0
     receipt_brand: str = "keeper's heart"
     receipt_max_age: timedelta = timedelta(days=30)

     # Admin auth
     jwt_secret: str = "dev-secret"
     jwt_algorithm: str = "HS256"
     admin_password_hash: Optional[str] = None
     admin_token_ttl: timedelta = timedelta(minutes=60)

     # Upload archive
     azure_storage_account: Optional[str] = None
     azure_storage_key: Optional[str] = None

     @property
     def paypal_base_url(self) -> str:
          if self.paypal_environment == "live":
               return "https://api-m.paypal.com"
          return "https://api-m.sandbox.paypal.com"

     @property
     def effective_rebate_amount(self) -> Decimal:
          """Amount assigned to new receipts (a configured test amount takes precedence)."""
          if self.test_payout_amount is not None:
               return self.test_payout_amount
          return self.rebate_amount


def load_settings() -> Settings:
     test_amount = os.getenv("TEST_PAYOUT_AMOUNT")
     return Settings(
          database_url=_database_url(),
          sql_echo=_parse_bool(os.getenv("SQL_ECHO"), False),
          log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
          cors_origins=_parse_csv(os.getenv("CORS_ORIGINS"), "http://localhost:3000"),
          scan_rate_limit=RateLimitPolicy(
               "scan",
               int(os.getenv("SCAN_RATE_LIMIT", "3")),
               timedelta(hours=int(os.getenv("SCAN_RATE_WINDOW_HOURS", "24"))),
          ),
          payout_rate_limit=RateLimitPolicy(
               "payout",
               int(os.getenv("PAYOUT_RATE_LIMIT", "1")),
               timedelta(days=int(os.getenv("PAYOUT_RATE_WINDOW_DAYS", "30"))),
               enabled=_parse_bool(os.getenv("ENABLE_PAYOUT_RATE_LIMIT"), True),
          ),
          session_prefix=os.getenv("SESSION_PREFIX", "kh"),
          session_validity=timedelta(hours=int(os.getenv("SESSION_VALIDITY_HOURS", "24"))),
          allowed_image_types=frozenset(
               _parse_csv(os.getenv("ALLOWED_IMAGE_TYPES"), "image/jpeg,image/jpg,image/png,image/webp")
          ),
          min_image_bytes=int(os.getenv("MIN_IMAGE_BYTES", str(100 * 1024))),
          max_image_bytes=int(os.getenv("MAX_IMAGE_BYTES", str(10 * 1024 * 1024))),
          auto_approval_enabled=_parse_bool(os.getenv("ENABLE_AUTO_APPROVAL"), True),
          auto_approval_threshold=float(os.getenv("AUTO_APPROVAL_CONFIDENCE_MIN", "0.80")),
          auto_approval_daily_limit=RateLimitPolicy(
               "auto_approval",
               int(os.getenv("AUTO_APPROVAL_MAX_DAILY", "1000")),
               timedelta(days=1),
          ),
          rebate_amount=Decimal(os.getenv("REBATE_AMOUNT", "5.00")),
          test_payout_amount=Decimal(test_amount) if test_amount else None,
          payout_currency=os.getenv("PAYOUT_CURRENCY", "USD"),
          paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
          paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
          paypal_environment=os.getenv("PAYPAL_ENVIRONMENT", "sandbox"),
          paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID"),
          payout_http_timeout=float(os.getenv("PAYOUT_HTTP_TIMEOUT_SECONDS", "30")),
          token_refresh_margin=timedelta(seconds=int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "60"))),
          classifier_mode=os.getenv("CLASSIFIER_MODE", "vision").lower(),
          google_vision_api_key=os.getenv("GOOGLE_VISION_API_KEY"),
          classifier_timeout=float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "20")),
          receipt_brand=os.getenv("RECEIPT_BRAND", "keeper's heart"),
          receipt_max_age=timedelta(days=int(os.getenv("RECEIPT_MAX_AGE_DAYS", "30"))),
          jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
          jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
          admin_password_hash=os.getenv("ADMIN_PASSWORD_HASH"),
          admin_token_ttl=timedelta(minutes=int(os.getenv("ADMIN_TOKEN_TTL_MINUTES", "60"))),
          azure_storage_account=os.getenv("AZURE_STORAGE_ACCOUNT"),
          azure_storage_key=os.getenv("AZURE_STORAGE_KEY"),
     )


settings = load_settings()
