from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

# .env at the project root: fastfolio/core/config.py -> fastfolio/core -> fastfolio -> root
_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _ROOT / ".env"


class Settings(BaseSettings):
    secret_key: str = "change-me-in-production"
    database_url: str = "sqlite:///./fastfolio.db"
    # Comma-separated origins; "*" in development
    cors_origins: str = "*"
    environment: str = "development"
    # Public base URL: return/IPN URLs and the billing page redirect are built from it
    app_url: str = "http://127.0.0.1:8000"
    # Comma-separated emails allowed to use /api/admin
    admin_emails: str = ""
    # Stripe (card gateway, USD cents)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance: int = 300
    stripe_pro_price_id: str = ""
    stripe_pro_yearly_price_id: str = ""
    stripe_lifetime_price_id: str = ""
    # VNPay (VND)
    vnpay_tmn_code: str = ""
    vnpay_hash_secret: str = ""
    vnpay_url: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    # MoMo (VND)
    momo_partner_code: str = ""
    momo_access_key: str = ""
    momo_secret_key: str = ""
    momo_api_endpoint: str = "https://test-payment.momo.vn/v2/gateway/api"
    momo_partner_name: str = "Fastfolio"
    gateway_timeout_seconds: float = 20.0

    model_config = {
        "env_file": _ENV_FILE if _ENV_FILE.is_file() else ".env",
        "extra": "ignore",
    }

    @field_validator(
        "stripe_secret_key",
        "stripe_webhook_secret",
        "vnpay_hash_secret",
        "momo_access_key",
        "momo_secret_key",
        mode="before",
    )
    @classmethod
    def strip_secret(cls, v: str | None) -> str:
        """Copy/paste whitespace in secrets turns every signature into a mismatch."""
        return (v or "").strip()

    @field_validator("app_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str:
        return (v or "").strip().rstrip("/")

    def admin_email_list(self) -> list[str]:
        return [e.strip().lower() for e in (self.admin_emails or "").split(",") if e.strip()]

    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins or self.cors_origins.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def billing_url(self) -> str:
        return f"{self.app_url}/billing"

    @property
    def vnpay_return_url(self) -> str:
        return f"{self.app_url}/api/vnpay/return"

    @property
    def momo_return_url(self) -> str:
        return f"{self.app_url}/api/momo/callback"

    @property
    def momo_ipn_url(self) -> str:
        return f"{self.app_url}/api/momo/ipn"
