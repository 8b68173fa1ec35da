"""Settings loader for the payment forwarding service."""
from __future__ import annotations

import re
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OffRampConfig(BaseModel):
    percent: Decimal = Field(ge=Decimal("0"), le=Decimal("100"))
    account_token: str = Field(min_length=1, max_length=512)
    recipient_id: str = Field(min_length=1, max_length=128)

    @property
    def fraction(self) -> Decimal:
        return self.percent / Decimal(100)


class StoreConfig(BaseModel):
    store_id: str = Field(min_length=1, max_length=128)
    payout_recipient: str = Field(min_length=1, max_length=255)
    payout_fraction: Decimal = Field(gt=Decimal("0"), le=Decimal("1"))
    tip_recipients: List[str] = Field(default_factory=list)
    off_ramp: Optional[OffRampConfig] = Field(default=None)

    @field_validator("payout_recipient")
    @classmethod
    def validate_payout_recipient(cls, value: str) -> str:
        candidate = value.strip()
        if not candidate:
            raise ValueError("payout_recipient must not be blank")
        return candidate

    @field_validator("tip_recipients")
    @classmethod
    def normalize_tip_recipients(cls, value: List[str]) -> List[str]:
        normalized: List[str] = []
        seen = set()
        for item in value:
            candidate = item.strip()
            if not candidate:
                continue
            if candidate.lower() in seen:
                continue
            seen.add(candidate.lower())
            normalized.append(candidate)
        return normalized

    @property
    def off_ramp_fraction(self) -> Decimal:
        if self.off_ramp is None:
            return Decimal("0")
        return self.off_ramp.fraction


class ForwarderSettings(BaseSettings):
    btcpay_base_uri: str = Field(default="http://localhost:23000/", env="BTCPAY_BASE_URI")
    btcpay_api_key: Optional[str] = Field(default=None, env="BTCPAY_API_KEY")
    rail_asset_code: str = Field(default="BTC", env="RAIL_ASSET_CODE")

    lnurl_base_uri: str = Field(default="https://pay.bitcoinjungle.app/", env="LNURL_BASE_URI")
    lnd_rest_url: str = Field(default="https://localhost:8080", env="LND_REST_URL")
    lnd_macaroon_hex: Optional[str] = Field(default=None, env="LND_MACAROON_HEX")
    lnd_tls_cert_path: Optional[Path] = Field(default=None, env="LND_TLS_CERT_PATH")
    rail_dry_run: bool = Field(default=False, env="RAIL_DRY_RUN")

    offramp_base_uri: Optional[str] = Field(default=None, env="OFFRAMP_BASE_URI")
    offramp_api_key: Optional[str] = Field(default=None, env="OFFRAMP_API_KEY")
    offramp_refresh_interval_seconds: int = Field(default=600, env="OFFRAMP_REFRESH_INTERVAL_SECONDS")

    http_timeout_seconds: float = Field(default=10.0, env="HTTP_TIMEOUT_SECONDS")
    rail_pay_timeout_seconds: float = Field(default=60.0, env="RAIL_PAY_TIMEOUT_SECONDS")

    db_path: Path = Field(default=Path("/app/data/forwarding.sqlite3"), env="DB_PATH")
    stores_path: Path = Field(default=Path("/app/data/stores.json"), env="STORES_PATH")

    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8090, env="API_PORT")
    api_root_path: str = Field(default="", env="API_ROOT_PATH")
    api_admin_token: Optional[str] = Field(default=None, env="API_ADMIN_TOKEN")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("btcpay_base_uri", "lnurl_base_uri", "offramp_base_uri")
    @classmethod
    def ensure_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        candidate = value.strip()
        if not candidate:
            return None
        if not re.match(r"^https?://", candidate):
            raise ValueError("base URIs must start with http:// or https://")
        if not candidate.endswith("/"):
            candidate += "/"
        return candidate

    @field_validator("rail_asset_code")
    @classmethod
    def normalize_asset_code(cls, value: str) -> str:
        candidate = value.strip().upper()
        if not candidate:
            raise ValueError("RAIL_ASSET_CODE must not be blank")
        return candidate

    @field_validator("api_port", "offramp_refresh_interval_seconds")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("http_timeout_seconds", "rail_pay_timeout_seconds")
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @model_validator(mode="after")
    def validate_rail_credentials(self) -> "ForwarderSettings":
        if not self.rail_dry_run and not self.lnd_macaroon_hex:
            raise ValueError("LND_MACAROON_HEX must be set unless RAIL_DRY_RUN is enabled")
        if self.offramp_base_uri and not self.offramp_api_key:
            raise ValueError("OFFRAMP_API_KEY must be set when OFFRAMP_BASE_URI is configured")
        return self

    @property
    def offramp_enabled(self) -> bool:
        return bool(self.offramp_base_uri)


def load_settings(**overrides) -> ForwarderSettings:
    """Build the settings object once at startup; callers pass it down explicitly."""
    return ForwarderSettings(**overrides)
