# clinic_billing/core/config.py
import os
from typing import List

from pydantic import BaseModel
from dotenv import load_dotenv

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Clinic Billing Ledger")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- Database ----------
    DATABASE_URL: str = os.getenv("DATABASE_URL",
                                  "sqlite:///./clinic_billing.db")
    DB_ECHO: bool = _flag("DB_ECHO")

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Clinic ----------
    # Report days and bill dates are computed in this zone
    CLINIC_TIMEZONE: str = os.getenv("CLINIC_TIMEZONE", "Asia/Kolkata")

    # ---------- Billing flags ----------
    BILL_NUMBER_PREFIX: str = os.getenv("BILL_NUMBER_PREFIX", "BILL-")
    BILL_NUMBER_PADDING: int = int(os.getenv("BILL_NUMBER_PADDING", "6"))
    BILLING_ALLOW_OVERPAYMENT: bool = _flag("BILLING_ALLOW_OVERPAYMENT",
                                            "true")
    REFUND_ALLOW_DIRECT_PAY: bool = _flag("REFUND_ALLOW_DIRECT_PAY")

    # module:callable entries called with each RefundPaidEvent
    REFUND_PAID_SUBSCRIBERS: List[str] = _split_csv(
        os.getenv(
            "REFUND_PAID_SUBSCRIBERS",
            "clinic_billing.services.billing_notifications:log_refund_paid",
        ))

    # ---------- Reports ----------
    PEAK_HOURS_TOP_N: int = int(os.getenv("PEAK_HOURS_TOP_N", "3"))

    # ---------- Logging ----------
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
