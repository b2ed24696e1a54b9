from decimal import Decimal
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", frozen=True, extra="ignore")

    processor_base_url: AnyHttpUrl = "https://payid19.com/api/v1"
    public_key: str = "change_public_key"
    private_key: str = "change_private_key"
    webhook_secret: Optional[str] = None
    domain_url: AnyHttpUrl = "http://localhost:8000"
    callback_path: str = "/api/webhook/callback"
    success_path: str = "/payment/success"
    cancel_path: str = "/payment/cancel"
    bearer_token: Optional[str] = None
    merchant_webhook_url: Optional[AnyHttpUrl] = None
    request_timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    sufficiency_ratio: Decimal = Decimal("0.95")
    invoice_ttl_hours: int = 24
    default_currency: str = "USD"
    use_status_probes: bool = True
    require_webhook_authentication: bool = False

    @property
    def signing_key(self) -> str:
        return self.webhook_secret or self.private_key

    def processor_url(self, endpoint: str) -> str:
        return f"{str(self.processor_base_url).rstrip('/')}/{endpoint.lstrip('/')}"

    def public_url(self, path: str) -> str:
        return f"{str(self.domain_url).rstrip('/')}/{path.lstrip('/')}"


settings = Settings()
