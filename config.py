import os
from dataclasses import dataclass, field
from typing import List


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "delivery_marketplace"
    tax_rate_percent: float = 5.0
    segment_meters: float = 500.0
    default_fixed_delivery_fee: float = 30.0
    default_fee_per_segment: float = 10.0
    require_delivery_otp: bool = False
    admin_token: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    upload_dir: str = "uploads"
    max_bill_image_bytes: int = 5 * 1024 * 1024
    log_level: str = "INFO"
    port: int = 8000


def load_settings() -> Settings:
    origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    segment = _env_float("SEGMENT_METERS", 500.0)
    if segment <= 0:
        raise ValueError("SEGMENT_METERS must be > 0")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
        database_name=os.getenv("DATABASE_NAME", "delivery_marketplace"),
        tax_rate_percent=_env_float("TAX_RATE_PERCENT", 5.0),
        segment_meters=segment,
        default_fixed_delivery_fee=_env_float("DEFAULT_FIXED_DELIVERY_FEE", 30.0),
        default_fee_per_segment=_env_float("DEFAULT_FEE_PER_SEGMENT", 10.0),
        require_delivery_otp=_env_bool("REQUIRE_DELIVERY_OTP"),
        admin_token=os.getenv("ADMIN_TOKEN", ""),
        cors_origins=origins or ["*"],
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        max_bill_image_bytes=int(_env_float("MAX_BILL_IMAGE_MB", 5) * 1024 * 1024),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", 8000)),
    )
